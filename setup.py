from setuptools import setup, find_packages

setup(
    name="PhyloMM",
    version="0.1.0",
    packages=find_packages(include=["phylomm", "phylomm.*"]),
    install_requires=[
        "numpy",
        "pandas",
        "matplotlib",
        "scipy",
        "scikit-learn"
    ],
    extras_require={
        "progress": ["tqdm"],
        "test": ["pytest"],
    },
    python_requires=">=3.9",
    author="PhyloMM developers",
    description="Phylogenetic generalized linear mixed models, cor_phylo and community dissimilarity",
)
