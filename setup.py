# setup.py

from setuptools import setup, find_packages

setup(
    name="isocal",
    version="0.1.0",
    packages=find_packages(exclude=["tests*", "data*"]),
    install_requires=[
        "numpy",
        "pandas",
        "scipy",
        "lmfit",
        "statsmodels",
        "pyyaml",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-cov",
        ]
    },
    entry_points={
        "console_scripts": [
            "isocal-run=IsoCal.scripts.run_calibration:main",
        ]
    }
)
