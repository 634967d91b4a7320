"""
Finder-pattern detector: locates the three position squares in a binary
matrix, rectifies the symbol and samples it into a module grid.
"""

import logging
from itertools import combinations

import cv2
import numpy as np

from bit_matrix import BitMatrix
from qr_errors import NotFoundError
from qr_result import DetectorResult, ResultPoint

logger = logging.getLogger(__name__)

# Smallest contour accepted as a finder square, in px^2
MIN_FINDER_AREA = 500
MIN_FINDER_AREA_HARD = 100
# Modules are warped to this many pixels before sampling
WARP_SCALE = 10
# Share of finder modules that must match for a grid to be accepted
MIN_FINDER_MATCH = 0.68
# Cap on patterns fed to the exhaustive triple search
MAX_PATTERNS = 8

FINDER = np.array([[1,1,1,1,1,1,1],[1,0,0,0,0,0,1],[1,0,1,1,1,0,1],[1,0,1,1,1,0,1],
                   [1,0,1,1,1,0,1],[1,0,0,0,0,0,1],[1,1,1,1,1,1,1]], dtype=np.uint8)


# ============================================================================
# FINDER PATTERNS
# ============================================================================

def find_finder_patterns(binary, min_area=MIN_FINDER_AREA):
    """
    Find finder patterns with their corner points.

    `binary` is uint8 with dark = 0. A finder pattern (1:1:3:1:1 rings)
    shows up as two or more concentric square contours.
    """
    contours, _ = cv2.findContours(binary, cv2.RETR_TREE, cv2.CHAIN_APPROX_SIMPLE)

    def approx_quad(c):
        peri = cv2.arcLength(c, True)
        return cv2.approxPolyDP(c, 0.04 * peri, True)

    def is_square(c):
        approx = approx_quad(c)
        if len(approx) != 4 or not cv2.isContourConvex(approx): return False
        x, y, w, h = cv2.boundingRect(approx)
        return w > 10 and h > 0 and 0.65 < w/h < 1.35

    def get_corners(c):
        pts = approx_quad(c).reshape(4, 2).astype(np.float32)
        s = pts.sum(axis=1)
        d = np.diff(pts, axis=1).flatten()
        corners = np.zeros((4, 2), dtype=np.float32)
        corners[0] = pts[np.argmin(s)]  # TL
        corners[2] = pts[np.argmax(s)]  # BR
        corners[1] = pts[np.argmin(d)]  # TR
        corners[3] = pts[np.argmax(d)]  # BL
        return corners

    def center(c):
        M = cv2.moments(c)
        return (M["m10"]/M["m00"], M["m01"]/M["m00"]) if M["m00"] > 0 else (0, 0)

    candidates = []
    for cnt in contours:
        area = cv2.contourArea(cnt)
        if area < min_area or not is_square(cnt):
            continue
        candidates.append({'center': center(cnt), 'area': area, 'corners': get_corners(cnt)})

    # Group concentric squares (same center, different sizes)
    patterns = []
    used = set()
    for i, c1 in enumerate(candidates):
        if i in used:
            continue
        group = [c1]
        used.add(i)
        for j, c2 in enumerate(candidates):
            if j not in used and _dist(c1['center'], c2['center']) < 20:
                group.append(c2)
                used.add(j)

        # Valid finder pattern: 2+ concentric squares with area ratio 2-25x
        if len(group) >= 2:
            areas = sorted([g['area'] for g in group], reverse=True)
            if 2.0 < areas[0] / areas[-1] < 25.0:
                patterns.append(max(group, key=lambda g: g['area']))

    # Keep the largest at each location
    final = []
    for p in sorted(patterns, key=lambda g: -g['area']):
        if not any(_dist(p['center'], f['center']) < 30 for f in final):
            final.append(p)
    return final


def _dist(a, b):
    return float(np.hypot(a[0] - b[0], a[1] - b[1]))


def identify_corners(patterns):
    """Order 3 finder patterns as (TL, TR, BL)."""
    centers = [p['center'] for p in patterns]
    max_d, diag = 0, (0, 1)
    for i in range(3):
        for j in range(i+1, 3):
            d = _dist(centers[i], centers[j])
            if d > max_d: max_d, diag = d, (i, j)

    tl_idx = 3 - diag[0] - diag[1]
    p1, p2 = patterns[diag[0]], patterns[diag[1]]
    c_tl = patterns[tl_idx]['center']
    v1 = (p1['center'][0] - c_tl[0], p1['center'][1] - c_tl[1])
    v2 = (p2['center'][0] - c_tl[0], p2['center'][1] - c_tl[1])
    if v1[0] * v2[1] - v1[1] * v2[0] > 0:
        return patterns[tl_idx], p1, p2
    return patterns[tl_idx], p2, p1


def is_valid_geometry(p1, p2, p3):
    """Right angle (60-120 deg) at one corner, legs within 3x, finder sizes within 4x."""
    sizes = [np.sqrt(p['area']) for p in (p1, p2, p3)]
    if max(sizes) / min(sizes) >= 4:
        return False
    centers = [p1['center'], p2['center'], p3['center']]
    for i in range(3):
        c = centers[i]
        others = [centers[j] for j in range(3) if j != i]
        v1 = (others[0][0] - c[0], others[0][1] - c[1])
        v2 = (others[1][0] - c[0], others[1][1] - c[1])
        len1, len2 = np.hypot(*v1), np.hypot(*v2)
        if len1 == 0 or len2 == 0:
            continue
        dot = (v1[0]*v2[0] + v1[1]*v2[1]) / (len1 * len2)
        angle = np.degrees(np.arccos(np.clip(dot, -1, 1)))
        if 60 < angle < 120 and max(len1, len2) / min(len1, len2) < 3:
            return True
    return False


def group_finder_patterns(patterns, exhaustive=False):
    """
    Triples (tl, tr, bl) that may belong to one symbol. Geometrically valid
    triples come first; with `exhaustive` every other combination follows.
    """
    if len(patterns) < 3:
        return []
    patterns = patterns[:MAX_PATTERNS]
    valid, rest = [], []
    for combo in combinations(patterns, 3):
        (valid if is_valid_geometry(*combo) else rest).append(identify_corners(list(combo)))
    return valid + rest if exhaustive else valid


# ============================================================================
# RECTIFICATION & SAMPLING
# ============================================================================

def estimate_version(tl, tr):
    module_size = np.sqrt(tl['area']) / 7
    dist = _dist(tl['center'], tr['center'])
    return max(1, min(40, round(((dist / module_size + 7) - 17) / 4)))


def get_qr_corners(tl, tr, bl, version):
    """
    4 outer corners of the symbol (TL, TR, BR, BL).

    Uses a homography from the finder corners (each finder has 4 corners
    at known module positions) and falls back to a parallelogram through
    the finder centers.
    """
    size = version * 4 + 17

    # In module coordinates:
    # TL finder outer square: corners at (0,0), (7,0), (7,7), (0,7)
    # TR finder outer square: corners at (size-7,0), (size,0), (size,7), (size-7,7)
    # BL finder outer square: corners at (0,size-7), (7,size-7), (7,size), (0,size)
    img_pts = np.array(list(tl['corners']) + list(tr['corners']) + list(bl['corners']), dtype=np.float32)
    mod_pts = np.array([[0, 0], [7, 0], [7, 7], [0, 7],
                        [size-7, 0], [size, 0], [size, 7], [size-7, 7],
                        [0, size-7], [7, size-7], [7, size], [0, size]], dtype=np.float32)

    H, _ = cv2.findHomography(mod_pts, img_pts, cv2.RANSAC, 3.0)
    if H is not None:
        outer_mod = np.array([[[0, 0]], [[size, 0]], [[size, size]], [[0, size]]], dtype=np.float32)
        return cv2.perspectiveTransform(outer_mod, H).reshape(4, 2).astype(np.float32)

    tl_c, tr_c, bl_c = (np.array(p['center']) for p in (tl, tr, bl))
    v_tr = tr_c - tl_c
    v_bl = bl_c - tl_c
    len_tr, len_bl = np.linalg.norm(v_tr), np.linalg.norm(v_bl)
    if len_tr == 0 or len_bl == 0:
        raise ValueError("coincident finder centers")
    module_h, module_v = len_tr / (size - 7), len_bl / (size - 7)
    u_tr, u_bl = v_tr / len_tr, v_bl / len_bl

    offset = 3.5
    qr_tl = tl_c - offset * module_h * u_tr - offset * module_v * u_bl
    qr_tr = tr_c + offset * module_h * u_tr - offset * module_v * u_bl
    qr_bl = bl_c - offset * module_h * u_tr + offset * module_v * u_bl
    qr_br = tl_c + v_tr + v_bl + offset * module_h * u_tr + offset * module_v * u_bl
    return np.array([qr_tl, qr_tr, qr_br, qr_bl], dtype=np.float32)


def score_grid(m):
    """Fraction of finder and timing modules that match the expected pattern."""
    size = m.shape[0]
    s = (np.sum(m[0:7, 0:7] == FINDER) + np.sum(m[0:7, size-7:size] == FINDER)
         + np.sum(m[size-7:size, 0:7] == FINDER))
    idx = np.arange(8, size - 8)
    expected = (idx % 2 == 0).astype(np.uint8)
    s += np.sum(m[6, idx] == expected) + np.sum(m[idx, 6] == expected)
    return float(s) / (3 * 49 + 2 * len(idx))


def finder_fit(m):
    size = m.shape[0]
    s = (np.sum(m[0:7, 0:7] == FINDER) + np.sum(m[0:7, size-7:size] == FINDER)
         + np.sum(m[size-7:size, 0:7] == FINDER))
    return float(s) / (3 * 49)


def sample_matrix(binary, corners, version, quick=False):
    """
    Warp the symbol square and sample it, searching a small range of
    offsets and module sizes for the best finder/timing fit.

    Returns (grid, score); grid is uint8 with 1 = dark.
    """
    size = version * 4 + 17
    warp_size = size * WARP_SCALE
    dst = np.array([[0, 0], [warp_size-1, 0], [warp_size-1, warp_size-1], [0, warp_size-1]], dtype=np.float32)
    M = cv2.getPerspectiveTransform(corners, dst)
    warped = cv2.warpPerspective(binary, M, (warp_size, warp_size), borderValue=255)
    _, warped = cv2.threshold(warped, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

    def sample(ox, oy, ms):
        coords_c = np.clip((ox + (np.arange(size) + 0.5) * ms).astype(int), 0, warp_size-1)
        coords_r = np.clip((oy + (np.arange(size) + 0.5) * ms).astype(int), 0, warp_size-1)
        return (warped[coords_r][:, coords_c] < 128).astype(np.uint8)

    step = 1.0 if quick else 0.5
    best, best_s, best_p = None, -1.0, (0.0, 0.0, float(WARP_SCALE))
    for ox in np.arange(-5, 5, step):
        for oy in np.arange(-5, 5, step):
            for ms in np.arange(9.6, 10.4, 0.2 if quick else 0.1):
                m = sample(ox, oy, ms)
                s = score_grid(m)
                if s > best_s: best, best_s, best_p = m, s, (ox, oy, ms)

    if quick:
        return best, best_s

    # Fine search around the coarse optimum
    ox, oy, ms = best_p
    for dox in np.arange(-0.5, 0.6, 0.2):
        for doy in np.arange(-0.5, 0.6, 0.2):
            for dms in np.arange(-0.15, 0.2, 0.05):
                m = sample(ox+dox, oy+doy, ms+dms)
                s = score_grid(m)
                if s > best_s: best, best_s = m, s
    return best, best_s


# ============================================================================
# DETECTOR
# ============================================================================

class Detector:
    """Finds and rectifies one QR symbol in a BitMatrix."""

    def __init__(self, image):
        self.image = image

    def detect(self, options=None):
        try_harder = bool(options is not None and options.try_harder)
        binary = self.image.to_image()
        try:
            patterns = find_finder_patterns(binary, MIN_FINDER_AREA_HARD if try_harder else MIN_FINDER_AREA)
        except cv2.error as e:
            raise NotFoundError(f"contour search failed: {e}") from e
        if len(patterns) < 3:
            raise NotFoundError(f"found {len(patterns)} finder patterns, need 3")

        best = None
        for tl, tr, bl in group_finder_patterns(patterns, exhaustive=try_harder):
            candidate = self._sample(binary, tl, tr, bl, try_harder)
            if candidate is not None and (best is None or candidate[0] > best[0]):
                best = candidate
        if best is None:
            raise NotFoundError(f"no usable symbol among {len(patterns)} finder patterns")

        score, grid, (tl, tr, bl) = best
        logger.debug("Detected %dx%d grid (fit %.2f)", grid.shape[0], grid.shape[0], score)
        points = [ResultPoint(*map(float, p['center'])) for p in (bl, tl, tr)]
        return DetectorResult(BitMatrix.from_array(grid), points)

    def _sample(self, binary, tl, tr, bl, try_harder):
        """(score, grid, finders) for one finder triple, or None if it does not fit."""
        try:
            version = estimate_version(tl, tr)
            if try_harder:
                # Pick the version whose quick sample fits finders and timing best
                versions = range(max(1, version - 2), min(40, version + 2) + 1)
                fits = [(sample_matrix(binary, get_qr_corners(tl, tr, bl, v), v, quick=True)[1], v)
                        for v in versions]
                version = max(fits)[1]
            grid, score = sample_matrix(binary, get_qr_corners(tl, tr, bl, version), version)
        except (cv2.error, ValueError, ZeroDivisionError) as e:
            logger.debug("Finder triple rejected: %s", e)
            return None
        if grid is None or finder_fit(grid) < MIN_FINDER_MATCH:
            return None
        return score, grid, (tl, tr, bl)


def detect(image, options=None):
    """Detector entry point used by the reader: (BitMatrix, options) -> DetectorResult."""
    return Detector(image).detect(options)
