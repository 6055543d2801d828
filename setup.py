#!/usr/bin/env python

from setuptools import setup, find_packages
from os import path

this_directory = path.abspath(path.dirname(__file__))
with open(path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

requirements = [
    'cryptography',
    'urllib3',
    'aiohttp>=3.6.0',  # For async HTTP support and streaming
]

test_requirements = [
    'pytest>=7',
    'pytest-asyncio>=0.21.0',
    'pytest-mock',
]

setup(
    name='featurebook',
    version='0.1.0',
    author="FeatureBook",
    python_requires='>=3.8',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Natural Language :: English',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
    ],
    description="Deterministic feature flag and experiment evaluation for Python apps",
    long_description=long_description,
    long_description_content_type='text/markdown',
    install_requires=requirements,
    extras_require={'tests': test_requirements},
    license="MIT",
    include_package_data=True,
    packages=find_packages(include=['featurebook', 'featurebook.*']),
    package_data={"featurebook": ["py.typed"]},
    keywords='feature-flags experiments ab-testing',
    test_suite='tests',
    tests_require=test_requirements,
)
