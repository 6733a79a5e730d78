"""Bodyshape estimates SMPL body parameters that explain a 3D scan.

Main submodules:
- :mod:`bodyshape.bodymodel` - SMPL model with analytic Jacobians and pose operations
- :mod:`bodyshape.keypoints` - mapping of 3D BODY_25 keypoints onto the model skeleton
- :mod:`bodyshape.costs` - scan distance residuals for a least-squares solver
- :mod:`bodyshape.paramfile` - text dump of the model parameters
"""

from __future__ import annotations

from .bodymodel import BodyModel, ModelState
from .common import ModelData, initialize
from .costs import DistanceConfig, ScanDistance, displacement_regularizer, pose_regularizer
from .errors import (
    BodyShapeError,
    InvalidJointError,
    ModelConfigError,
    NoDetectionsError,
    ParameterFileError,
)
from .keypoints import map_to_model

try:
    from ._version import version as __version__
except ImportError:
    __version__ = '0.0.0'

__all__ = [
    'BodyModel',
    'ModelState',
    'ModelData',
    'initialize',
    'DistanceConfig',
    'ScanDistance',
    'pose_regularizer',
    'displacement_regularizer',
    'map_to_model',
    'BodyShapeError',
    'InvalidJointError',
    'ModelConfigError',
    'NoDetectionsError',
    'ParameterFileError',
    '__version__',
]
