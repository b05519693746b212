from setuptools import setup, find_packages
import re

# Read version from nominacalc/__init__.py
with open('nominacalc/__init__.py') as f:
    version = re.search(r'^__version__ = ["\']([^"\']+)["\']', f.read(), re.MULTILINE).group(1)

setup(
    name='nomina-calc',
    version=version,
    packages=find_packages(include=['nominacalc', 'nominacalc.*']),
    package_data={
        'nominacalc': ['fiscal-tables/*.yaml'],
    },
    include_package_data=True,
    install_requires=[
        'PyYAML>=6.0',
        'click>=8.0',
        'pydantic>=2.0.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'nomina-calc=nominacalc.cli.__main__:main',
        ],
    },
    author='Personal',
    description='Mexican payroll formula and fiscal rule engine.',
    python_requires='>=3.10',
)
