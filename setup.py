#!/usr/bin/env python
from setuptools import setup, find_packages

with open("README.md", "r") as fh:
    long_description = fh.read()

setup(
    name='django-ldapaaa',
    version='1.0.0',
    description='LDAP user resolution, group membership and authorization for AAA servers',
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords=['django', 'ldap', 'radius', 'aaa'],
    author="Caltech IMSS ADS",
    author_email="imss-ads-staff@caltech.edu",
    packages=find_packages(exclude=['bin']),
    include_package_data=True,
    python_requires='>=3.10',
    install_requires=[
        'Django',
        'ldap_filter',
        'python-ldap',
        'pyasn1',
    ],
    extras_require={
        'test': [
            'python-ldap-faker',
            'pytest',
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3"
    ],
)
