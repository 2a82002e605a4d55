"""Loading model weights from safetensors files into named parameters."""

from __future__ import annotations

import abc
import json
import logging
import os
from collections.abc import Mapping, MutableMapping
from pathlib import Path
from typing import Optional

import numpy as np

logger = logging.getLogger(__name__)


class SafetensorsError(ValueError):
    """Raised when a safetensors file is malformed or cannot be written."""


class WeightLoadError(ValueError):
    """Raised when a tensor cannot be loaded into its parameter."""


_DTYPES = {
    "F64": np.dtype("<f8"),
    "F32": np.dtype("<f4"),
    "F16": np.dtype("<f2"),
    "I64": np.dtype("<i8"),
    "I32": np.dtype("<i4"),
    "I16": np.dtype("<i2"),
    "I8": np.dtype("i1"),
    "U64": np.dtype("<u8"),
    "U32": np.dtype("<u4"),
    "U16": np.dtype("<u2"),
    "U8": np.dtype("u1"),
    "BOOL": np.dtype("?"),
}

_CODES = {(dt.kind, dt.itemsize): code for code, dt in _DTYPES.items()}


def _decode_tensor(name: str, info, buffer: memoryview) -> np.ndarray:
    if not isinstance(info, dict):
        raise SafetensorsError(f"Invalid header entry for tensor {name!r}")
    try:
        code = info["dtype"]
        shape = tuple(int(d) for d in info["shape"])
        start, end = (int(o) for o in info["data_offsets"])
    except (KeyError, TypeError, ValueError) as exc:
        raise SafetensorsError(f"Invalid header entry for tensor {name!r}") from exc

    if code == "BF16":
        storage = np.dtype("<u2")
    elif code in _DTYPES:
        storage = _DTYPES[code]
    else:
        raise SafetensorsError(f"Unsupported dtype {code!r} for tensor {name!r}")

    count = int(np.prod(shape, dtype=np.int64))
    if start < 0 or end < start or end > len(buffer) or end - start != count * storage.itemsize:
        raise SafetensorsError(f"Invalid data offsets for tensor {name!r}")

    arr = np.frombuffer(buffer[start:end], dtype=storage).reshape(shape)
    if code == "BF16":
        return (arr.astype(np.uint32) << 16).view(np.float32)
    return arr.copy()


def read_safetensors(path) -> dict[str, np.ndarray]:
    """Read every tensor of a safetensors file, in header order."""
    raw = Path(path).read_bytes()
    if len(raw) < 8:
        raise SafetensorsError(f"File too short to be safetensors: {path}")
    header_len = int.from_bytes(raw[:8], "little")
    if 8 + header_len > len(raw):
        raise SafetensorsError(f"Header length exceeds file size: {path}")
    try:
        header = json.loads(raw[8 : 8 + header_len].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SafetensorsError(f"Invalid safetensors header: {path}") from exc
    if not isinstance(header, dict):
        raise SafetensorsError(f"Invalid safetensors header: {path}")

    buffer = memoryview(raw)[8 + header_len :]
    return {
        name: _decode_tensor(name, info, buffer)
        for name, info in header.items()
        if name != "__metadata__"
    }


def write_safetensors(path, tensors: Mapping) -> None:
    """Write named arrays to a safetensors file."""
    header: dict[str, dict] = {}
    chunks: list[bytes] = []
    offset = 0
    for name in sorted(tensors):
        arr = np.asarray(tensors[name])
        code = _CODES.get((arr.dtype.kind, arr.dtype.itemsize))
        if code is None:
            raise SafetensorsError(f"Unsupported dtype {arr.dtype} for tensor {name!r}")
        data = np.ascontiguousarray(arr, dtype=_DTYPES[code]).tobytes()
        header[name] = {
            "dtype": code,
            "shape": list(arr.shape),
            "data_offsets": [offset, offset + len(data)],
        }
        chunks.append(data)
        offset += len(data)

    header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
    header_bytes += b" " * (-len(header_bytes) % 8)
    with open(path, "wb") as fh:
        fh.write(len(header_bytes).to_bytes(8, "little"))
        fh.write(header_bytes)
        for chunk in chunks:
            fh.write(chunk)


class WeightLoader(abc.ABC):
    """Something a loaded tensor can be written into."""

    @abc.abstractmethod
    def load_weight(self, weight) -> None:
        """Load a weight tensor."""

    def load_weight_with_metadata(self, weight, metadata: str) -> None:
        """Load a weight tensor tagged with metadata such as a shard id."""
        self.load_weight(weight)


class Parameter(WeightLoader):
    """A named array whose contents are overwritten in place on load."""

    def __init__(self, data):
        self.data = np.asarray(data)

    def load_weight(self, weight) -> None:
        weight = np.asarray(weight)
        if weight.shape != self.data.shape:
            raise ValueError(
                f"Shape mismatch: expected {list(self.data.shape)}, got {list(weight.shape)}"
            )
        np.copyto(self.data, weight, casting="same_kind")

    def load_weight_with_metadata(self, weight, metadata: str) -> None:
        self.load_weight(weight)

    def __repr__(self) -> str:
        return f"Parameter(shape={self.data.shape}, dtype={self.data.dtype})"


class ModelLoader:
    """Loads safetensors weights into a map of named parameters."""

    def __init__(self) -> None:
        # original name -> (packed name, shard id)
        self.packed_modules_mapping: dict[str, tuple[str, str]] = {}

    def add_packed_mapping(self, original: str, packed: str, shard_id: str) -> None:
        """Route tensors whose names contain `original` to `packed` with a shard id."""
        self.packed_modules_mapping[str(original)] = (str(packed), str(shard_id))

    def find_packed_mapping(self, tensor_name: str) -> Optional[tuple[str, str]]:
        """Return (mapped name, shard id) for the first matching mapping, if any."""
        for original, (packed, shard_id) in self.packed_modules_mapping.items():
            if original in tensor_name:
                return tensor_name.replace(original, packed), shard_id
        return None

    def load_safetensors(self, path, parameter_map: MutableMapping[str, WeightLoader]) -> None:
        """Load every tensor of one safetensors file into the parameter map."""
        for name, tensor in read_safetensors(path).items():
            try:
                self._load_tensor(name, tensor, parameter_map)
            except (ValueError, TypeError) as exc:
                raise WeightLoadError(f"Failed to load tensor: {name}") from exc

    def load_safetensors_dir(
        self, dir_path, parameter_map: MutableMapping[str, WeightLoader]
    ) -> None:
        """Load every .safetensors file of a directory, in sorted order."""
        directory = Path(dir_path)
        if not directory.is_dir():
            raise NotADirectoryError(f"Path is not a directory: {os.fspath(dir_path)}")
        files = sorted(p for p in directory.iterdir() if p.suffix == ".safetensors")
        if not files:
            raise FileNotFoundError(
                f"No safetensors files found in directory: {os.fspath(dir_path)}"
            )
        for file_path in files:
            logger.info("Loading weights from: %s", file_path)
            self.load_safetensors(file_path, parameter_map)

    def _load_tensor(
        self, tensor_name: str, tensor: np.ndarray, parameter_map: MutableMapping[str, WeightLoader]
    ) -> None:
        mapping = self.find_packed_mapping(tensor_name)
        param_name, shard_id = mapping if mapping is not None else (tensor_name, None)
        target = parameter_map.get(param_name)
        if target is None:
            logger.warning(
                "No parameter found for tensor: %s (mapped to: %s)", tensor_name, param_name
            )
            return
        if shard_id is None:
            target.load_weight(tensor)
        else:
            target.load_weight_with_metadata(tensor, shard_id)


def create_standard_loader() -> ModelLoader:
    """A loader with the usual packed QKV and gate/up mappings."""
    loader = ModelLoader()
    loader.add_packed_mapping("q_proj", "qkv_proj", "q")
    loader.add_packed_mapping("k_proj", "qkv_proj", "k")
    loader.add_packed_mapping("v_proj", "qkv_proj", "v")
    loader.add_packed_mapping("gate_proj", "gate_up_proj", "0")
    loader.add_packed_mapping("up_proj", "gate_up_proj", "1")
    return loader