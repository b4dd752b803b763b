#!/usr/bin/env python3

from setuptools import setup, find_packages

with open('README.md', 'r') as f:
    long_description = f.read()

with open('opencl_pcg/VERSION.py', 'rt') as f:
    version = f.readlines()[2].strip()

setup(name='opencl_pcg',
      version=version,
      description='OpenCL sparse PCG solver for finite-volume systems',
      long_description=long_description,
      long_description_content_type='text/markdown',
      packages=find_packages(exclude=['tests']),
      package_data={
          'opencl_pcg': ['kernels/*']
      },
      install_requires=[
            'numpy',
            'scipy',
            'pyopencl',
            'jinja2',
            'mako',
      ],
      extras_require={
            'test': ['pytest', 'pyopencl[pocl]'],
      },
      )
