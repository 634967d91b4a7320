"""Black/white module matrix backed by a numpy bool array."""

import cv2
import numpy as np


class BitMatrix:
    """
    Fixed-size grid of booleans, True = dark ("on").

    Addressed as (x, y): x grows to the right, y grows downward. The
    underlying array is indexed [y, x] like any image.
    """

    def __init__(self, width, height=None):
        height = width if height is None else height
        if width < 1 or height < 1:
            raise ValueError(f"Both dimensions must be positive, got {width}x{height}")
        self.bits = np.zeros((height, width), dtype=bool)

    @classmethod
    def from_array(cls, array):
        """Wrap a 2D array-like; anything truthy counts as dark."""
        arr = np.asarray(array).astype(bool)
        if arr.ndim != 2:
            raise ValueError(f"Expected a 2D array, got shape {arr.shape}")
        m = cls(arr.shape[1], arr.shape[0])
        m.bits[:, :] = arr
        return m

    @classmethod
    def from_image(cls, image):
        """Binarize a grayscale or BGR image (Otsu), dark pixels become on bits."""
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if len(image.shape) == 3 else image
        if gray.dtype != np.uint8:
            gray = cv2.normalize(gray, None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
        return cls.from_array(binary < 128)

    @property
    def width(self):
        return self.bits.shape[1]

    @property
    def height(self):
        return self.bits.shape[0]

    def _check(self, x, y):
        if not (0 <= x < self.width and 0 <= y < self.height):
            raise IndexError(f"({x}, {y}) outside {self.width}x{self.height} matrix")

    def get(self, x, y):
        self._check(x, y)
        return bool(self.bits[y, x])

    def set(self, x, y, value=True):
        self._check(x, y)
        self.bits[y, x] = value

    def flip(self, x, y):
        self._check(x, y)
        self.bits[y, x] = not self.bits[y, x]

    def top_left_on_bit(self):
        """First on pixel in raster order as (x, y), or None for a blank matrix."""
        on = np.flatnonzero(self.bits)
        if on.size == 0:
            return None
        return int(on[0] % self.width), int(on[0] // self.width)

    def bottom_right_on_bit(self):
        """Last on pixel in raster order as (x, y), or None for a blank matrix."""
        on = np.flatnonzero(self.bits)
        if on.size == 0:
            return None
        return int(on[-1] % self.width), int(on[-1] // self.width)

    def transpose(self):
        """Copy reflected about the main diagonal (how a mirrored symbol reads)."""
        return BitMatrix.from_array(self.bits.T)

    def to_image(self):
        """uint8 image with dark modules 0 and light modules 255."""
        return np.where(self.bits, 0, 255).astype(np.uint8)

    def __eq__(self, other):
        if not isinstance(other, BitMatrix):
            return NotImplemented
        return self.bits.shape == other.bits.shape and bool(np.array_equal(self.bits, other.bits))

    def __repr__(self):
        return f"BitMatrix({self.width}x{self.height})"

    def __str__(self):
        return "\n".join("".join("X " if b else "  " for b in row) for row in self.bits)
