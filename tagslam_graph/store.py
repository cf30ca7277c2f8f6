"""Variable store: current values for every known key."""
from typing import Dict, Iterator, List, Optional, Tuple
import logging
import numpy as np

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import DuplicateVariableError
from .keys import Category, VariableKey, MAX_TAG_ID, NUM_CORNERS

logger = logging.getLogger("tagslam.store")


class VariableStore:
    """Insert-once mapping VariableKey -> Pose3 | Point3 backed by ``gtsam.Values``.

    Poses are stored for tag transforms, camera and body poses; world corners
    hold Point3. The only way to change an existing value is ``replace_all``,
    which swaps in a complete solution at once.
    """

    def __init__(self):
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot build variable store")
        self._values = gtsam.Values()
        self._keys: Dict[int, VariableKey] = {}

    def __len__(self) -> int:
        return len(self._keys)

    def __contains__(self, key: VariableKey) -> bool:
        return self.exists(key)

    @property
    def values(self) -> "gtsam.Values":
        return self._values

    def exists(self, key: VariableKey) -> bool:
        return key.to_gtsam() in self._keys

    def insert(self, key: VariableKey, value) -> None:
        k = key.to_gtsam()
        if k in self._keys:
            raise DuplicateVariableError(f"variable {key} already exists")
        if key.category is Category.WORLD_CORNER:
            self._values.insert(k, np.asarray(value, dtype=float).reshape(3))
        else:
            self._values.insert(k, value)
        self._keys[k] = key

    def get(self, key: VariableKey):
        k = key.to_gtsam()
        if k not in self._keys:
            raise KeyError(str(key))
        if key.category is Category.WORLD_CORNER:
            return np.asarray(self._values.atPoint3(k), dtype=float)
        return self._values.atPose3(k)

    def find(self, key: VariableKey):
        """Like ``get`` but returns None for unknown keys."""
        return self.get(key) if self.exists(key) else None

    def keys(self) -> List[VariableKey]:
        return sorted(self._keys.values())

    def keys_in_range(self, lo: VariableKey, hi: VariableKey) -> List[VariableKey]:
        """All known keys with lo <= key <= hi, ordered."""
        return [k for k in self.keys() if not (k < lo) and not (hi < k)]

    def world_corner_keys(self) -> List[VariableKey]:
        lo = VariableKey(Category.WORLD_CORNER, 0, 0)
        last_frame = max((k.frame for k in self._keys.values()
                          if k.category is Category.WORLD_CORNER), default=0)
        hi = VariableKey(Category.WORLD_CORNER, MAX_TAG_ID * NUM_CORNERS + NUM_CORNERS - 1, last_frame)
        return self.keys_in_range(lo, hi)

    def items(self) -> Iterator[Tuple[VariableKey, object]]:
        for key in self.keys():
            yield key, self.get(key)

    def replace_all(self, new_values: "gtsam.Values") -> None:
        """Commit a solution: swap the whole store for ``new_values``.

        ``new_values`` must hold exactly the keys currently known.
        """
        new_keys = set(int(k) for k in new_values.keys())
        if new_keys != set(self._keys):
            raise ValueError(
                f"replacement values hold {len(new_keys)} keys, store has {len(self._keys)}")
        self._values = gtsam.Values(new_values)

    def copy_values(self) -> "gtsam.Values":
        return gtsam.Values(self._values)

    def _at(self, values: "gtsam.Values", key: VariableKey):
        if key.category is Category.WORLD_CORNER:
            return values.atPoint3(key.to_gtsam())
        return values.atPose3(key.to_gtsam())

    def subset(self, gtsam_keys) -> "gtsam.Values":
        """Values restricted to the given GTSAM keys (unknown keys are ignored)."""
        out = gtsam.Values()
        for k in gtsam_keys:
            key = self._keys.get(int(k))
            if key is not None and not out.exists(int(k)):
                out.insert(int(k), self._at(self._values, key))
        return out

    def commit(self, solution: "gtsam.Values") -> None:
        """Replace the store with ``solution``, keeping current values for keys it lacks."""
        merged = gtsam.Values()
        for k, key in self._keys.items():
            src = solution if solution.exists(k) else self._values
            merged.insert(k, self._at(src, key))
        self.replace_all(merged)
