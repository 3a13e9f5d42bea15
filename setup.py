"""
EVM GPU - Setup Script
GPU-accelerated Eulerian motion magnification
"""

from setuptools import setup, find_packages
import os
import re
import subprocess

VERSION = '0.3.0'

here = os.path.abspath(os.path.dirname(__file__))
readme_path = os.path.join(here, 'README.md')
if os.path.exists(readme_path):
    with open(readme_path, 'r', encoding='utf-8') as fh:
        long_description = fh.read()
else:
    long_description = ''


def get_cuda_version():
    """CUDA toolkit version reported by nvcc, or (None, None, None)"""
    try:
        result = subprocess.run(['nvcc', '--version'], capture_output=True, text=True)
    except (OSError, subprocess.SubprocessError):
        return None, None, None
    if result.returncode == 0:
        match = re.search(r'release (\d+)\.(\d+)', result.stdout)
        if match:
            major, minor = match.groups()
            return f"{major}.{minor}", int(major), int(minor)
    return None, None, None


cuda_version_str, cuda_major, cuda_minor = get_cuda_version()

install_requires = [
    'numpy>=1.22.0',
    'scipy>=1.8.0',
    'psutil>=5.8.0',
    'pandas>=1.3.0',
    'matplotlib>=3.4.0',
    'GPUtil>=1.4.0',
]

# CuPy wheel matching the local toolkit; without nvcc pick an extra by hand
if cuda_major == 11:
    install_requires.append('cupy-cuda11x>=12.0.0')
elif cuda_major == 12:
    install_requires.append('cupy-cuda12x>=13.0.0')
elif cuda_version_str:
    print(f"⚠️  CUDA {cuda_version_str} is not officially supported, install CuPy manually")
else:
    print("⚠️  CUDA not detected. Install evm-gpu[cuda11] or evm-gpu[cuda12] for GPU support.")

extras_require = {
    'test': [
        'pytest>=7.0.0',
        'pytest-cov>=3.0.0',
    ],
    'dev': [
        'pytest>=7.0.0',
        'pytest-cov>=3.0.0',
        'black>=22.0',
        'flake8>=4.0.0',
        'mypy>=0.950',
    ],
    'cuda11': ['cupy-cuda11x>=12.0.0'],
    'cuda12': ['cupy-cuda12x>=13.0.0'],
}

setup(
    name='evm-gpu',
    version=VERSION,
    description='GPU-accelerated Eulerian motion magnification for breathing analysis',
    long_description=long_description,
    long_description_content_type='text/markdown',

    packages=find_packages(include=['evm_gpu', 'evm_gpu.*']),

    python_requires='>=3.9',

    install_requires=install_requires,
    extras_require=extras_require,

    entry_points={
        'console_scripts': [
            'evm-gpu=evm_gpu:cli',
            'evm-benchmark=evm_gpu.benchmarks.performance_tests:main',
            'evm-check-gpu=evm_gpu.utils.gpu_check:main',
        ],
    },

    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Science/Research',
        'Topic :: Scientific/Engineering :: Image Processing',
        'Topic :: Multimedia :: Video',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Programming Language :: CUDA',
        'Operating System :: POSIX :: Linux',
        'Operating System :: Microsoft :: Windows',
        'Environment :: GPU :: NVIDIA CUDA :: 11.0',
        'Environment :: GPU :: NVIDIA CUDA :: 12.0',
    ],

    keywords='motion-magnification eulerian video gpu cuda breathing',

    platforms=['Linux', 'Windows'],
    license='MIT',
    zip_safe=False,
)
