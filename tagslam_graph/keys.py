"""Variable keys for the tag graph.

Every optimization variable is named by a ``VariableKey`` (category, index,
frame). Keys are validated on construction and encoded into GTSAM symbols:

===================  ==========  ==========================================
category             character   symbol index
===================  ==========  ==========================================
tag transform T_b_o  ``t``       tag id
world corner X_w_i   ``w``       frame * CORNER_STRIDE + tag id * 4 + corner
camera pose T_w_c    ``a``+cam   frame
body pose T_w_b      ``A``+body  frame
===================  ==========  ==========================================

Static entities always use frame 0.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Tuple
import logging

try:
    import gtsam
except Exception:
    gtsam = None

from .errors import KeyRangeExceededError

logger = logging.getLogger("tagslam.keys")

MAX_TAG_ID = 255
MAX_CAM_ID = 8
MAX_BODY_ID = ord("Z") - ord("A")  # 'Z' is reserved
NUM_CORNERS = 4

CHR_BITS = 8
INDEX_BITS = 64 - CHR_BITS
INDEX_MASK = (1 << INDEX_BITS) - 1

# tag 255 corner 3 must stay below the next frame's first slot
CORNER_STRIDE = NUM_CORNERS * (MAX_TAG_ID + 1)
MAX_FRAME = (1 << INDEX_BITS) // CORNER_STRIDE


class Category(Enum):
    TAG_TRANSFORM = "tag_transform"
    WORLD_CORNER = "world_corner"
    CAMERA_POSE = "camera_pose"
    BODY_POSE = "body_pose"


_ORDER = {
    Category.TAG_TRANSFORM: 0,
    Category.WORLD_CORNER: 1,
    Category.CAMERA_POSE: 2,
    Category.BODY_POSE: 3,
}


@dataclass(frozen=True)
class VariableKey:
    """Discriminated key: which entity, which frame."""
    category: Category
    index: int
    frame: int = 0

    def __post_init__(self):
        if not isinstance(self.category, Category):
            raise TypeError(f"category must be a Category, got {type(self.category)}")
        if self.frame < 0 or self.frame >= MAX_FRAME:
            raise KeyRangeExceededError(f"frame {self.frame} outside [0, {MAX_FRAME})")
        if self.index < 0:
            raise KeyRangeExceededError(f"negative index {self.index} for {self.category.value}")
        if self.category is Category.TAG_TRANSFORM:
            if self.index > MAX_TAG_ID:
                raise KeyRangeExceededError(f"tag id exceeds MAX_TAG_ID: {self.index}")
            if self.frame != 0:
                raise KeyRangeExceededError("tag transforms are frame independent")
        elif self.category is Category.WORLD_CORNER:
            if self.index >= CORNER_STRIDE:
                raise KeyRangeExceededError(f"tag id exceeds MAX_TAG_ID: {self.index // NUM_CORNERS}")
        elif self.category is Category.CAMERA_POSE:
            if self.index >= MAX_CAM_ID:
                raise KeyRangeExceededError(f"cam id exceeds MAX_CAM_ID: {self.index}")
        elif self.category is Category.BODY_POSE:
            if self.index >= MAX_BODY_ID:
                raise KeyRangeExceededError(f"body idx exceeds MAX_BODY_ID: {self.index}")

    def sort_key(self) -> Tuple[int, int]:
        return (_ORDER[self.category], self.symbol_index())

    def __lt__(self, other: "VariableKey") -> bool:
        return self.sort_key() < other.sort_key()

    def symbol_chr(self) -> str:
        if self.category is Category.TAG_TRANSFORM:
            return "t"
        if self.category is Category.WORLD_CORNER:
            return "w"
        if self.category is Category.CAMERA_POSE:
            return chr(ord("a") + self.index)
        return chr(ord("A") + self.index)

    def symbol_index(self) -> int:
        if self.category is Category.TAG_TRANSFORM:
            return self.index
        if self.category is Category.WORLD_CORNER:
            return self.frame * CORNER_STRIDE + self.index
        return self.frame

    def to_gtsam(self) -> int:
        if gtsam is None:
            raise RuntimeError("GTSAM not available; cannot encode keys")
        return int(gtsam.symbol(self.symbol_chr(), self.symbol_index()))

    @classmethod
    def from_gtsam(cls, key: int) -> "VariableKey":
        """Invert ``to_gtsam`` using GTSAM's symbol layout (8-bit chr, 56-bit index)."""
        key = int(key)
        c = chr((key >> INDEX_BITS) & 0xFF)
        idx = key & INDEX_MASK
        if c == "t":
            return cls(Category.TAG_TRANSFORM, idx, 0)
        if c == "w":
            return cls(Category.WORLD_CORNER, idx % CORNER_STRIDE, idx // CORNER_STRIDE)
        if "a" <= c < chr(ord("a") + MAX_CAM_ID):
            return cls(Category.CAMERA_POSE, ord(c) - ord("a"), idx)
        if "A" <= c < chr(ord("A") + MAX_BODY_ID):
            return cls(Category.BODY_POSE, ord(c) - ord("A"), idx)
        raise KeyRangeExceededError(f"key {key} does not belong to the tag graph key space")

    def __str__(self) -> str:
        return f"{self.symbol_chr()}{self.symbol_index()}"


def key_for_tag_transform(tag_id: int) -> VariableKey:
    """Transform from tag (object) frame to its body, one per tag id."""
    return VariableKey(Category.TAG_TRANSFORM, int(tag_id), 0)


def key_for_world_corner(tag_id: int, corner: int, frame: int) -> VariableKey:
    if tag_id < 0 or tag_id > MAX_TAG_ID:
        raise KeyRangeExceededError(f"tag id exceeds MAX_TAG_ID: {tag_id}")
    if corner < 0 or corner >= NUM_CORNERS:
        raise KeyRangeExceededError(f"corner index out of range: {corner}")
    return VariableKey(Category.WORLD_CORNER, int(tag_id) * NUM_CORNERS + int(corner), int(frame))


def key_for_camera_pose(cam_id: int, frame: int) -> VariableKey:
    # T_w_c(t)
    return VariableKey(Category.CAMERA_POSE, int(cam_id), int(frame))


def key_for_body_pose(body_id: int, frame: int) -> VariableKey:
    # T_w_b(t)
    return VariableKey(Category.BODY_POSE, int(body_id), int(frame))


def decode_world_corner(key) -> Tuple[int, int, int]:
    """Return ``(frame, tag_id, corner)`` for a world-corner key (or its GTSAM int)."""
    if not isinstance(key, VariableKey):
        key = VariableKey.from_gtsam(key)
    if key.category is not Category.WORLD_CORNER:
        raise ValueError(f"not a world corner key: {key}")
    return key.frame, key.index // NUM_CORNERS, key.index % NUM_CORNERS
