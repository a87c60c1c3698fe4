"""
Setup script for the blockgmres package.

Build commands:
    pip install .              # Install
    pip install -e .           # Editable install
    pip install .[fast,test]   # With Numba kernels and the test runner
"""

from setuptools import setup

setup(
    name="blockgmres",
    version="0.1.0",
    description="Restarted Householder GMRES solver for multiple right-hand sides",
    author="Qianqian Fang",
    author_email="q.fang@neu.edu",
    license="BSD",
    packages=["blockgmres"],
    python_requires=">=3.8",
    install_requires=[
        "numpy>=1.16",
        "scipy>=1.0",
    ],
    extras_require={
        "fast": ["numba>=0.50"],
        "test": ["pytest>=6.0"],
    },
)
