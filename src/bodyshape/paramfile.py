"""Plain-text dump of body model parameters.

The layout is a sequence of labelled bracket sections::

    Translation [
    t0 , t1 , t2 ,
    ]
    Pose params [
    p00 , p01 , p02 ,
    ...
    ]
    Shape (betas) params [
    b0 , b1 , ... ,
    ]
    Joints locations for posed and shaped model [
    x y z
    ...
    ]

The joint locations are informative only and are not read back.
"""

from __future__ import annotations

import logging
import re

import numpy as np

from .common import opened
from .errors import ParameterFileError

logger = logging.getLogger(__name__)

_SEPARATOR = re.compile(r'[\s,]+')


def write_parameters(file, translation, pose, shape, joint_locations):
    """Writes the parameters to a path or a text stream.

    Values are written with ``repr`` so that reading them back gives the same floats.
    """
    with opened(file, 'w') as f:
        f.write('Translation [ \n')
        f.write(_format_row(translation) + '\n')
        f.write(']\n')

        f.write('Pose params [ \n')
        for row in np.reshape(pose, (-1, 3)):
            f.write(_format_row(row) + '\n')
        f.write(']\n')

        f.write('Shape (betas) params [ \n')
        f.write(_format_row(shape) + '\n')
        f.write(']\n')

        f.write('Joints locations for posed and shaped model [\n')
        for joint in np.asarray(joint_locations):
            f.write(' '.join(repr(float(x)) for x in joint) + '\n')
        f.write(']\n')


def read_parameters(file, num_joints, num_betas):
    """
    Reads the parameters written by :func:`write_parameters`.

    Returns:
        A tuple containing
            - **translation** -- shaped as (3,).
            - **pose** -- shaped as (num_joints, 3).
            - **shape** -- shaped as (num_betas,).

    Raises:
        ParameterFileError: If a section is missing, holds the wrong number of values or
            holds a non-numeric value.
    """
    with opened(file, 'r') as f:
        sections = _read_sections(f, max_sections=3)

    expected = [('translation', 3), ('pose', num_joints * 3), ('shape', num_betas)]
    if len(sections) < len(expected):
        raise ParameterFileError(
            f'Expected {len(expected)} parameter sections, found {len(sections)}'
        )

    values = []
    for (name, count), (label, tokens) in zip(expected, sections):
        if len(tokens) != count:
            raise ParameterFileError(
                f'Section "{label}" holds {len(tokens)} values, expected {count} {name} values'
            )
        try:
            values.append(np.array([float(token) for token in tokens]))
        except ValueError:
            raise ParameterFileError(f'Non-numeric value in section "{label}"') from None

    translation, pose, shape = values
    logger.debug('Read parameters: translation %s', translation)
    return translation, pose.reshape(num_joints, 3), shape


def _read_sections(f, max_sections):
    """Splits the text into (label, tokens) pairs. A line outside a section is its label."""
    sections = []
    label = None
    tokens: list[str] = []
    for line in f:
        line = line.strip()
        if label is None:
            if not line:
                continue
            label = line.rstrip('[').strip()
            tokens = []
        elif line == ']':
            sections.append((label, tokens))
            label = None
            if len(sections) == max_sections:
                break
        else:
            tokens.extend(token for token in _SEPARATOR.split(line) if token)

    if label is not None:
        raise ParameterFileError(f'Section "{label}" is not closed')
    return sections


def _format_row(values):
    return ''.join(f'{float(x)!r} , ' for x in np.ravel(values))

