from setuptools import find_packages, setup


setup(
    name="tensorplan",
    version="0.1.0",
    description="Tensor graph compiler: symbolic shapes -> optimized passes -> memory-planned execution",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "sympy>=1.12",
    ],
    extras_require={
        "dev": [
            "pytest>=7",
        ],
    },
    zip_safe=False,
)
