"""
Binary persistence of trip sets and their sampling parameters.

File layout (big-endian, fixed width):

    int32   tripCount
    repeat tripCount times:
        int64 tripId
        int32 nodeCount
        repeat nodeCount times: int64 nodeId
    int32   thetaRows
    int32   thetaCols
    float64 theta[thetaRows][thetaCols]   (row-major)

Trips are written sorted by id; theta columns follow the same order.
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path

import numpy as np

from .config import SECONDS_IN_WEEK
from .network import RoadNetwork
from .trip import Trip

logger = logging.getLogger(__name__)

_INT32 = struct.Struct(">i")
_INT64 = struct.Struct(">q")
_THETA_DTYPE = np.dtype(">f8")
_NODE_DTYPE = np.dtype(">i8")


class InconsistentModelFile(OSError):
    """Raised when a model file is truncated or structurally invalid."""


@dataclass
class TripModelData:
    """Trips sorted by id together with the theta matrix aligned to them."""

    trips: list = field(default_factory=list)
    theta: np.ndarray = field(default_factory=lambda: np.zeros((0, 0)))

    @property
    def n_bins(self) -> int:
        return int(self.theta.shape[0])

    @property
    def bin_size(self) -> int:
        return SECONDS_IN_WEEK // self.n_bins


@dataclass
class RawModel:
    """Model file contents before node ids are resolved against a map."""

    trips: list[tuple[int, list[int]]]
    theta: np.ndarray


# =============================================================================
# WRITING
# =============================================================================

def encode_model(trips: list[tuple[int, list[int]]], theta: np.ndarray) -> bytes:
    """
    Serialize (trip id, node ids) pairs and theta.

    Args:
        trips: Trip ids with their node sequences, in column order of theta
        theta: Array of shape (rows, cols)

    Returns:
        Encoded bytes
    """
    theta = np.asarray(theta, dtype=float)
    if theta.ndim != 2:
        raise ValueError(f"theta must be 2-dimensional, got shape {theta.shape}")

    parts = [_INT32.pack(len(trips))]
    for trip_id, node_ids in trips:
        parts.append(_INT64.pack(int(trip_id)))
        parts.append(_INT32.pack(len(node_ids)))
        parts.append(np.asarray(node_ids, dtype=np.int64).astype(_NODE_DTYPE).tobytes())

    rows, cols = theta.shape
    parts.append(_INT32.pack(rows))
    parts.append(_INT32.pack(cols))
    parts.append(theta.astype(_THETA_DTYPE).tobytes(order="C"))
    return b"".join(parts)


def write_model(path: Path | str, data: TripModelData) -> Path:
    """
    Write a trip model to disk.

    Args:
        path: Output file path
        data: Trips and theta

    Returns:
        The written path
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    trips = sorted(data.trips, key=lambda t: t.id)
    payload = encode_model([(t.id, list(t.node_ids)) for t in trips], data.theta)
    path.write_bytes(payload)

    logger.info(f"Wrote {len(trips)} trips and theta {data.theta.shape} to {path}")
    return path


# =============================================================================
# READING
# =============================================================================

class _Reader:
    def __init__(self, buffer: bytes):
        self.buffer = buffer
        self.offset = 0

    def take(self, n: int) -> memoryview:
        end = self.offset + n
        if n < 0 or end > len(self.buffer):
            raise InconsistentModelFile(
                f"Unexpected end of file at byte {self.offset} (needed {n} more bytes)"
            )
        view = memoryview(self.buffer)[self.offset:end]
        self.offset = end
        return view

    def int32(self) -> int:
        return _INT32.unpack(self.take(_INT32.size))[0]

    def int64(self) -> int:
        return _INT64.unpack(self.take(_INT64.size))[0]


def decode_model(buffer: bytes) -> RawModel:
    """
    Parse the binary model format.

    Raises:
        InconsistentModelFile: If the file is truncated, has trailing bytes,
            negative counts, or a row count that does not divide the week
    """
    reader = _Reader(buffer)

    n_trips = reader.int32()
    if n_trips < 0:
        raise InconsistentModelFile(f"Negative trip count: {n_trips}")

    trips = []
    for _ in range(n_trips):
        trip_id = reader.int64()
        n_nodes = reader.int32()
        if n_nodes < 0:
            raise InconsistentModelFile(f"Negative node count for trip {trip_id}")
        nodes = np.frombuffer(reader.take(n_nodes * _NODE_DTYPE.itemsize), dtype=_NODE_DTYPE)
        trips.append((trip_id, [int(n) for n in nodes]))

    rows = reader.int32()
    cols = reader.int32()
    if rows <= 0 or cols < 0:
        raise InconsistentModelFile(f"Invalid theta dimensions {rows}x{cols}")

    values = np.frombuffer(reader.take(rows * cols * _THETA_DTYPE.itemsize), dtype=_THETA_DTYPE)
    theta = values.astype(np.float64).reshape(rows, cols)

    if reader.offset != len(buffer):
        raise InconsistentModelFile(
            f"{len(buffer) - reader.offset} trailing bytes after theta"
        )
    if SECONDS_IN_WEEK % rows != 0:
        raise InconsistentModelFile("File is not consistent.")

    return RawModel(trips=trips, theta=theta)


def read_model(path: Path | str, network: RoadNetwork) -> TripModelData:
    """
    Load a trip model and rebuild its trips on the given road network.

    Args:
        path: Model file
        network: Road network the node ids refer to

    Returns:
        TripModelData with trips sorted by id

    Raises:
        OSError: If the file cannot be read
        InconsistentModelFile: If the content is invalid for this network
    """
    raw = decode_model(Path(path).read_bytes())

    trips = []
    for trip_id, node_ids in raw.trips:
        missing = [n for n in node_ids if not network.has_node(n)]
        if missing:
            raise InconsistentModelFile(
                f"Trip {trip_id} references {len(missing)} unknown intersections"
            )
        trips.append(Trip(trip_id, node_ids, network))

    # theta columns always follow the id order, whatever order the trips were written in
    trips.sort(key=lambda t: t.id)
    return TripModelData(trips=trips, theta=raw.theta)
