#!/usr/bin/env python
"""
Setup script for the DRESS modeling toolkit.
"""

from setuptools import find_packages, setup

setup(
    name="dress-modeling",
    version="1.0.0",
    description="Supervised learning and model evaluation over nested clinical research subjects",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.24",
        "pandas>=2.0",
        "scipy>=1.10",
        "scikit-learn>=1.3",
        "pyyaml>=6.0",
        "dask[distributed]>=2023.5",
        "mlflow>=2.8",
        "optuna>=3.4",
        "fastapi>=0.100",
        "pydantic>=2.0",
        "uvicorn>=0.23",
        "faker>=19.0",
    ],
    extras_require={
        "test": ["pytest>=7.4", "httpx>=0.24"],
    },
    entry_points={
        "console_scripts": [
            "dress-train=dress.pipeline.training_pipeline:main",
            "dress-serve=dress.serving.api:main",
            "dress-generate=dress.data_generation.generate_subjects:main",
        ],
    },
)
