from setuptools import find_packages, setup

setup(
    name='bodyshape',
    version='0.1.0',
    package_dir={'': 'src'},
    packages=find_packages('src'),
    scripts=[],
    description='SMPL body model with analytic Jacobians, keypoint-based pose initialization and scan distance costs for fitting bodies to 3D scans',
    python_requires='>=3.9',
    install_requires=[
        'numpy',
        'scipy',
        'trimesh',
    ],
    extras_require={
        'test': ['pytest'],
    },
)
