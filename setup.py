from setuptools import setup, find_packages

setup(
  name='batchclust',
  version=0.1,
  description='Task clustering schedulers for running workflows on batch-scheduled pilot jobs',
  packages=find_packages(exclude=['tests', 'tests.*']),
  python_requires='>=3.11',
  install_requires=[
    'numpy', 'pandas', 'networkx', 'tqdm'
  ],
  extras_require={
    'test': ['pytest'],
  },
)
