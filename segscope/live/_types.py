"""
segscope.live._types

Shared array aliases so signatures read the same across the live modules.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
import numpy.typing as npt

NDArrayU8 = npt.NDArray[np.uint8]
NDArrayF32 = npt.NDArray[np.float32]
BoolArray = npt.NDArray[np.bool_]

Box = Tuple[float, float, float, float]  # x1, y1, x2, y2
Color = Tuple[int, int, int]  # BGR
