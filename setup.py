from setuptools import setup, find_packages

setup(
    name="trackfit_reco",
    version="0.1.0",
    description="Global chi-square track fitting, track linearization and grid-density vertex seeding",
    author="Your Name",
    author_email="your.email@example.com",
    packages=find_packages(include=["trackfit_reco", "trackfit_reco.*"]),
    python_requires=">=3.9",
    install_requires=[
        # Runtime dependencies
        "numpy",
        "numba",
        "pandas",
        "scipy",
        "orjson",
    ],
    extras_require={
        # Developer extras
        "dev": [
            "pytest",
            "black",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            # CLI entry point for trackfit_reco/main.py
            "trackfit-reco=trackfit_reco.main:main",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],
)
