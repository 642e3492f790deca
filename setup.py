from setuptools import setup

from armpatcher.version import __version__

setup(
    name="armpatcher",
    version=__version__,
    description=("Assemble ARM code fragments and patch them into PE firmware images"),
    license="GPL-3.0",
    python_requires=">=3.10",
    install_requires=[
        "typing_extensions",
        "mrcrowbar >= 1.0.0rc2",
        "capstone >= 5.0.0",
    ],
    extras_require={
        "test": ["pytest"],
    },
    packages=["armpatcher"],
    entry_points={
        "console_scripts": [
            "armpatcher = armpatcher.cli:main",
        ],
    },
)
