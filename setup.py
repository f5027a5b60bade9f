
VERSION=20261018

import setuptools
try:
    with open("README.md", "r", encoding="utf-8") as fh:
        long_description = fh.read()
except OSError:
    long_description = ''
setuptools.setup(
    name="simumbrella",
    version=VERSION,
    description="Sim development workspace provisioning utility",
    long_description=long_description,
    long_description_content_type="text/markdown",
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX",
    ],
    packages=["simumbrella"],
    python_requires=">=3.9",
    install_requires = [
        "PyYAML>=6.0.1",
        "filelock>=3.12",
    ],
    extras_require = {
        'test': ["pytest>=7"],
    },
    entry_points = {
        'console_scripts': [
            'umb = simumbrella.umb:main',
            'umb-dev = simumbrella.devsession:main',
        ]
    }
)
