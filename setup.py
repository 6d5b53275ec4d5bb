"""
Setup script for Raz - Ephemeral end-to-end encrypted rooms.

Created by orpheus497

This package provides:
- Per-sender hash ratchet with AES-256-GCM message encryption
- Pair and passcode-protected group rooms with automatic expiry
- Owner-only destruction of group rooms
- Realtime fan-out of room events
- An asyncio relay server that only ever sees ciphertext
"""

from setuptools import setup, find_packages
import os

this_directory = os.path.abspath(os.path.dirname(__file__))
with open(os.path.join(this_directory, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='raz-rooms',
    version='1.0.0',
    author='orpheus497',
    description='Ephemeral end-to-end encrypted chat rooms with a ratcheted relay protocol',
    long_description=long_description,
    long_description_content_type='text/markdown',
    package_dir={'': 'src'},
    packages=find_packages(where='src'),
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Topic :: Communications :: Chat',
        'Topic :: Security :: Cryptography',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Operating System :: OS Independent',
        'Environment :: Console',
    ],
    python_requires='>=3.11',
    install_requires=[
        'cryptography>=42.0.4',
        'argon2-cffi>=23.1.0',
        'rich>=13.7.0',
    ],
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'raz-server=raz.server:main',
        ],
    },
)
