from setuptools import setup, find_packages

setup(
    name="mlnmr",
    version="0.1.0",
    packages=find_packages(include=["mlnmr", "mlnmr.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "scipy>=1.9",
        "joblib>=1.3",
        "arviz>=0.17,<1.0",
    ],
    extras_require={
        "progress": ["tqdm"],
        "test": ["pytest"],
    },
    python_requires=">=3.9",
    description="Multilevel network meta-regression for population-adjusted indirect comparisons",
)
