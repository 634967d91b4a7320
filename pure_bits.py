"""
Pure-barcode grid extraction.

Used when the symbol is axis aligned and fills the frame, so no finder
search is needed. Every parameter (module size, grid origin, dimension) is
derived from pixel transition counts, and any self-contradictory
measurement fails with NotFoundError instead of producing a bad grid.
"""

import logging
import math

import numpy as np

from bit_matrix import BitMatrix
from qr_errors import NotFoundError

logger = logging.getLogger(__name__)

# Smallest QR symbol is 21 modules across
MIN_DIMENSION = 21
# Five colour changes across a finder (1:1:3:1:1 then separator) span 7 modules
FINDER_TRANSITIONS = 5
FINDER_MODULES = 7.0
# Percentage of dark pixels that makes a module dark; below half on purpose
# so faded modules still count
DARK_VOTE_PERCENT = 40


def _round(value):
    """Round half up."""
    return int(math.floor(value + 0.5))


# ============================================================================
# MODULE SIZE
# ============================================================================

def scan_transitions(image, x, y, dx, dy, limit=FINDER_TRANSITIONS):
    """
    Walk from (x, y) in steps of (dx, dy), starting in the dark state, until
    `limit` colour changes are seen or the ray leaves the matrix.

    Returns (steps, transitions, hit_edge).
    """
    bits = image.bits
    width, height = image.width, image.height
    start_x, start_y = x, y
    in_black = True
    transitions = 0
    while 0 <= x < width and 0 <= y < height:
        if in_black != bits[y, x]:
            transitions += 1
            if transitions == limit:
                break
            in_black = not in_black
        x += dx
        y += dy
    hit_edge = not (0 <= x < width and 0 <= y < height)
    return max(abs(x - start_x), abs(y - start_y)), transitions, hit_edge


def module_size_from_diagonal(image, x, y):
    steps, transitions, hit_edge = scan_transitions(image, x, y, 1, 1)
    if hit_edge or transitions < FINDER_TRANSITIONS:
        raise NotFoundError(f"{transitions} transitions on the diagonal from ({x}, {y})")
    return steps / FINDER_MODULES


def module_size_one_way(image, x, y, horizontal):
    """Like the diagonal scan along one axis, but returns None when unusable."""
    dx, dy = (1, 0) if horizontal else (0, 1)
    steps, transitions, hit_edge = scan_transitions(image, x, y, dx, dy)
    if hit_edge or transitions < FINDER_TRANSITIONS:
        return None
    return steps / FINDER_MODULES


def estimate_module_size(top_left, image):
    """
    Mean of the diagonal estimate (mandatory) and whichever axis estimates
    are usable.
    """
    x, y = top_left
    sizes = [module_size_from_diagonal(image, x, y)]
    for horizontal in (True, False):
        size = module_size_one_way(image, x, y, horizontal)
        if size is not None:
            sizes.append(size)
    return sum(sizes) / len(sizes)


# ============================================================================
# SAMPLING
# ============================================================================

def sample_grid(image, center_x, center_y, size):
    """Vote over a small neighbourhood so a few noisy pixels do not flip a module."""
    if size <= 1:
        return image.get(center_x, center_y)

    r = min(2, size // 2)
    window = image.bits[max(0, center_y - r):min(image.height, center_y + r + 1),
                        max(0, center_x - r):min(image.width, center_x + r + 1)]
    return int(np.count_nonzero(window)) * 100 >= window.size * DARK_VOTE_PERCENT


# ============================================================================
# GRID
# ============================================================================

def square_dimensions(width, height):
    """QR symbols are square: a large mismatch means a bad bound, keep the smaller side."""
    if abs(width - height) > min(width, height) // 5:
        side = min(width, height)
        return side, side
    return width, height


def fit_origin(origin, bound, count, module_size, nudge):
    """Pull a nudged origin back so the last sample stays inside `bound`."""
    overflow = origin + int((count - 1) * module_size) - bound
    if overflow > 0:
        if overflow > nudge:
            raise NotFoundError(f"grid of {count} modules overruns its bound by {overflow}px")
        origin -= overflow
    return origin


def extract_pure_bits(image):
    """Read an uncropped, axis-aligned symbol straight into a module grid."""
    top_left = image.top_left_on_bit()
    bottom_right = image.bottom_right_on_bit()
    if top_left is None or bottom_right is None:
        raise NotFoundError("no dark pixels")

    module_size = estimate_module_size(top_left, image)

    left, top = top_left
    right, bottom = bottom_right

    if left >= right:
        right = min(image.width - 1, left + int(module_size * MIN_DIMENSION))
    if top >= bottom:
        bottom = min(image.height - 1, top + int(module_size * MIN_DIMENSION))
    if left >= right or top >= bottom:
        raise NotFoundError(f"degenerate bounds ({left}, {top}) - ({right}, {bottom})")

    matrix_width = _round((right - left + 1) / module_size)
    matrix_height = _round((bottom - top + 1) / module_size)
    if matrix_width <= 0 or matrix_height <= 0:
        raise NotFoundError(f"module size {module_size:.2f} too large for the region")
    matrix_width, matrix_height = square_dimensions(matrix_width, matrix_height)

    # Sample module centres rather than edges
    nudge = int(module_size / 2.0)
    left = fit_origin(left + nudge, right, matrix_width, module_size, nudge)
    top = fit_origin(top + nudge, bottom, matrix_height, module_size, nudge)

    logger.debug("Pure grid %dx%d, module %.2fpx, origin (%d, %d)",
                 matrix_width, matrix_height, module_size, left, top)

    size = int(module_size)
    bits = BitMatrix(matrix_width, matrix_height)
    for y in range(matrix_height):
        offset_y = top + int(y * module_size)
        for x in range(matrix_width):
            if sample_grid(image, left + int(x * module_size), offset_y, size):
                bits.set(x, y)
    return bits
