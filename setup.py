from setuptools import setup, find_packages

setup(
    name="permuto-enc",
    version="1.0.0",
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    python_requires=">=3.10",
    install_requires=[
        "torch>=2.1.0",
        "numpy>=1.26.4",
        "tqdm>=4.66.1",
        "pyyaml>=6.0.1",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "permuto-enc=permuto.cli:main",
        ],
    },
    author="NeuroCity Development Team",
    author_email="info@neurocity.dev",
    description="Multi-resolution permutohedral lattice encoding for neural fields",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    keywords="neural fields, permutohedral lattice, positional encoding, sdf, nerf",
    include_package_data=True,
    zip_safe=False,
)
