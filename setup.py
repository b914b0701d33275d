from __future__ import annotations

from setuptools import setup


setup(
    name="detfci",
    version="0.1.0",
    description="Determinant-based FCI solver with Abelian point-group symmetry",
    packages=["detfci"],
    python_requires=">=3.9",
    install_requires=[
        "numpy>=1.22",
        "scipy>=1.8",
        "threadpoolctl>=3.0",
    ],
    extras_require={
        "test": ["pytest>=7"],
        "pyscf": ["pyscf>=2.1"],
    },
)
