from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, slots=True)
class DType:
	"""Scalar dtype for IR nodes.

	Only the name and the element size matter to the compiler: buffer sizes
	are `numel * itemsize`. `np` maps back to NumPy for host data and the
	CPU kernels.
	"""

	name: str
	itemsize: int

	@property
	def np(self) -> np.dtype:
		return np.dtype(self.name)

	def __str__(self) -> str:  # pragma: no cover
		return self.name


float32 = DType("float32", 4)
float16 = DType("float16", 2)
int32 = DType("int32", 4)
bool_ = DType("bool", 1)

_BY_NAME = {d.name: d for d in (float32, float16, int32, bool_)}


def dtype_by_name(name: str) -> DType:
	try:
		return _BY_NAME[name]
	except KeyError:
		raise ValueError(f"unsupported dtype {name!r}; expected one of {sorted(_BY_NAME)}") from None


def dtype_from_numpy(dtype: np.dtype) -> DType:
	return dtype_by_name(np.dtype(dtype).name)
