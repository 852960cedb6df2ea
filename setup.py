# Always prefer setuptools over distutils
from setuptools import setup, find_packages
# To use a consistent encoding
from codecs import open
from os import path

from proofengine import __version__

here = path.abspath(path.dirname(__file__))

# Get the long description from the README file
with open(path.join(here, 'README.md'), encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='opentimestamps-proofengine',

    version=__version__,

    description='Create, upgrade and verify OpenTimestamps proofs',
    long_description=long_description,
    long_description_content_type='text/markdown',

    license='LGPL3',

    # See https://pypi.python.org/pypi?%3Aaction=list_classifiers
    classifiers=[
        'Development Status :: 4 - Beta',

        'Intended Audience :: Developers',
        'Intended Audience :: End Users/Desktop',
        'Topic :: Security :: Cryptography',

        'License :: OSI Approved :: GNU Lesser General Public License v3 or later (LGPLv3+)',

        'Programming Language :: Python :: 3 :: Only',
    ],

    keywords='cryptography timestamping bitcoin',

    packages=find_packages(exclude=['contrib', 'docs']),

    # List run-time dependencies here.  These will be installed by pip when
    # your project is installed.
    install_requires=['python-bitcoinlib>=0.9.0',
                      'pycryptodome>=3.3.1',
                      'appdirs>=1.3.0',
                      'PySocks>=1.5.0'],

    extras_require={},

    package_data={},

    data_files=[],

    entry_points={
        'console_scripts': [
            'ots-engine = proofengine.ots:main',
        ],
    },
)
