"""Mapping of 3D BODY_25 keypoints onto the SMPL skeleton.

A keypoint table has one row per BODY_25 keypoint with the columns x, y, z and a detection
confidence. A keypoint counts as detected when its confidence is positive.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from .common import opened
from .errors import NoDetectionsError

logger = logging.getLogger(__name__)

BODY_25_KEYPOINTS = (
    'Nose',
    'Neck',
    'RShoulder',
    'RElbow',
    'RWrist',
    'LShoulder',
    'LElbow',
    'LWrist',
    'MidHip',
    'RHip',
    'RKnee',
    'RAnkle',
    'LHip',
    'LKnee',
    'LAnkle',
    'REye',
    'LEye',
    'REar',
    'LEar',
    'LBigToe',
    'LSmallToe',
    'LHeel',
    'RBigToe',
    'RSmallToe',
    'RHeel',
)
KEYPOINT_INDEX = {name: i for i, name in enumerate(BODY_25_KEYPOINTS)}

ROOT_PAIR = (KEYPOINT_INDEX['MidHip'], KEYPOINT_INDEX['Neck'])

# Ordered from the root to the extremities, so parents are set before their children
LIMB_PAIRS = (
    (1, 0),
    (2, 3),
    (3, 4),
    (5, 6),
    (6, 7),
    (9, 10),
    (10, 11),
    (11, 22),
    (12, 13),
    (13, 14),
    (14, 19),
)

KEYPOINT_TO_JOINT = {
    'Neck': 'Neck',
    'RShoulder': 'RShoulder',
    'RElbow': 'RElbow',
    'LShoulder': 'LShoulder',
    'LElbow': 'LElbow',
    'RHip': 'RHip',
    'RKnee': 'RKnee',
    'RAnkle': 'RAnkle',
    'LHip': 'LHip',
    'LKnee': 'LKnee',
    'LAnkle': 'LAnkle',
}


def is_detected(keypoints, i_keypoint) -> bool:
    return bool(keypoints[i_keypoint, 3] > 0)


def normalize_keypoints(keypoints):
    """Centres the keypoint coordinates at their mean. The confidences are kept."""
    normalized = np.array(keypoints, np.float64)
    normalized[:, :3] -= normalized[:, :3].mean(axis=0)
    return normalized


def load_keypoints(file) -> np.ndarray:
    """Reads a keypoint table written as rows of ``x, y, z, score,``."""
    rows = []
    with opened(file, 'r') as f:
        for line in f:
            values = line.replace(',', ' ').split()
            if values:
                rows.append([float(value) for value in values])
    if not rows:
        return np.zeros((0, 4))
    return np.array(rows, np.float64)


def save_keypoints(file, keypoints):
    with opened(file, 'w') as f:
        for row in np.asarray(keypoints):
            f.write(''.join(f'{float(x)!r}, ' for x in row) + '\n')


def map_to_model(keypoints: Optional[np.ndarray], model):
    """
    Poses the model so that its skeleton follows the detected keypoints.

    The root is oriented first, then the back is twisted to the shoulder line, then each
    limb is rotated from the root towards the extremities. A pair with an undetected
    endpoint leaves the corresponding joint unchanged.

    Parameters:
        keypoints: BODY_25 keypoint table, shaped as (25, 4).
        model: A :class:`bodyshape.BodyModel`.

    Raises:
        NoDetectionsError: If no keypoints were detected yet.
        ValueError: If the table does not have one row of four values per keypoint.
    """
    if keypoints is None or np.size(keypoints) == 0:
        raise NoDetectionsError(
            'Request to match a detected pose to the body model made before any pose was '
            'detected'
        )
    keypoints = np.asarray(keypoints, np.float64)
    expected_shape = (len(BODY_25_KEYPOINTS), 4)
    if keypoints.shape != expected_shape:
        raise ValueError(
            f'Keypoint table must have shape {expected_shape} (x, y, z, score for every '
            f'BODY_25 keypoint), got {keypoints.shape}'
        )

    _send_root_rotation(keypoints, model)
    _send_twist(keypoints, model)
    _send_limb_rotations(keypoints, model)


def _direction(keypoints, i_start, i_end):
    return keypoints[i_end, :3] - keypoints[i_start, :3]


def _send_root_rotation(keypoints, model):
    i_hip, i_neck = ROOT_PAIR
    if not (is_detected(keypoints, i_hip) and is_detected(keypoints, i_neck)):
        logger.debug('Root keypoints not detected, root rotation skipped')
        return

    i_left, i_right = KEYPOINT_INDEX['LHip'], KEYPOINT_INDEX['RHip']
    if is_detected(keypoints, i_left) and is_detected(keypoints, i_right):
        hips_direction = _direction(keypoints, i_right, i_left)
    else:
        logger.debug('Hip keypoints not detected, keeping the default hips direction')
        hips_direction = np.array([1.0, 0.0, 0.0])
    model.rotate_root(_direction(keypoints, i_hip, i_neck), hips_direction)


def _send_twist(keypoints, model):
    i_left, i_right = KEYPOINT_INDEX['LShoulder'], KEYPOINT_INDEX['RShoulder']
    if not (is_detected(keypoints, i_left) and is_detected(keypoints, i_right)):
        logger.debug('Shoulder keypoints not detected, back twist skipped')
        return
    model.twist_back(_direction(keypoints, i_right, i_left))


def _send_limb_rotations(keypoints, model):
    for i_keypoint, i_child in LIMB_PAIRS:
        name = BODY_25_KEYPOINTS[i_keypoint]
        if not (is_detected(keypoints, i_keypoint) and is_detected(keypoints, i_child)):
            logger.debug(
                'Keypoint pair %s -> %s not detected, skipped', name, BODY_25_KEYPOINTS[i_child]
            )
            continue
        model.rotate_limb_to_direction(
            KEYPOINT_TO_JOINT[name], _direction(keypoints, i_keypoint, i_child)
        )
