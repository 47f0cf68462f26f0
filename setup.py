"""
Setup configuration for stat-kernels - accelerator-resident std/mean reductions for PyTorch
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text(encoding='utf-8')

setup(
    name='stat-kernels',
    version='0.1.0',
    description='Split std/mean reductions for PyTorch that avoid fused-op CPU fallbacks',
    long_description=long_description,
    long_description_content_type='text/markdown',
    packages=find_packages(include=['stat_kernels', 'stat_kernels.*', 'utils', 'utils.*']),
    classifiers=[
        'Development Status :: 3 - Alpha',
        'Intended Audience :: Developers',
        'Topic :: Scientific/Engineering :: Artificial Intelligence',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
    ],
    python_requires='>=3.9',
    install_requires=[
        'torch>=2.0.0',
        'numpy>=1.19.0',
        'pyyaml>=5.4',
        'python-dotenv>=0.19',
    ],
    extras_require={
        'bench': [
            'triton>=2.0.0',
        ],
        'dev': [
            'pytest>=6.0',
            'pytest-cov>=2.0',
            'black>=22.0',
            'isort>=5.0',
            'flake8>=4.0',
        ],
    },
)
