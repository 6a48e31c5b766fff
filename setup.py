from setuptools import setup, find_packages

setup(
    name='laplace-gmrf',
    version="0.1.0",
    author="Sean Plummer",
    author_email="seanp@uark.edu / snplmmr@gmail.com",
    description="Laplace-approximate estimation of latent Gaussian (GMRF) models",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=("tests", "tests.*", "examples")),
    install_requires=[
        "torch>=2.0.0",
        "numpy>=1.21.0",
        "scipy>=1.8.0",
    ],
    extras_require={
        "dev": [
            "pytest>=7.0",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
    ],
)
