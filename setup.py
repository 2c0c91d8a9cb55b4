#!/usr/bin/env python3

from setuptools import setup, find_packages

import pathlib

HERE = pathlib.Path(__file__).parent


def read(path):
    return (HERE / path).read_text("utf-8").strip()


install_requires = [
    'aiohttp>=3.8.0,<4.0.0',
    'aiofiles>=0.8.0',
    'asyncssh>=2.14.0',
    'marshmallow>=3.13.0,<4.0.0',
    'cryptography>=2.8',
    'colorama>=0.4.4',
    'click>=7.0',
]

tests_require = [
    'pytest>=7.0',
    'pytest-aiohttp>=1.0.4',
    'pytest-asyncio>=0.17',
]

setup(
    name="relaytunnel",
    version='1.0.0',
    description='Expose a local service on the network of a relay host through an SSH reverse tunnel',
    long_description="\n\n".join((read("README.md"), read("CHANGES.md"))),
    long_description_content_type='text/markdown',
    license="Apache 2",
    packages=find_packages(exclude=('*test*',)),
    install_requires=install_requires,
    extras_require={'tests': tests_require},
    include_package_data=True,
    entry_points={
        'console_scripts': [
            'relaytunnel=relaytunnel.client:main',
            'relaytunnel-config=relaytunnel.config:main',
            'relaytunnel-security=relaytunnel.common.security:main',
        ],
    },
    classifiers=[
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: OS Independent",
    ],
    python_requires='>=3.10',
)
