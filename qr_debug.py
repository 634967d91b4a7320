"""QR reader debug output - saves intermediate results to disk."""

import os

import cv2
import numpy as np

# Debug output directory (None = disabled). Set by `qr_reader.py --debug`.
DEBUG_DIR = None


def _save_img(debug_dir, name, data, scale=None):
    """Save image to debug_dir. Bool / 0-1 grids are drawn dark-on-light and scaled up."""
    path = os.path.join(debug_dir, name)
    if data.dtype == bool or (data.ndim == 2 and data.max() <= 1):
        s = scale or 1
        img = np.where(data.astype(bool), 0, 255).astype(np.uint8)
        if s > 1:
            img = cv2.resize(img, (img.shape[1]*s, img.shape[0]*s), interpolation=cv2.INTER_NEAREST)
        cv2.imwrite(path, img)
    else:
        cv2.imwrite(path, data)
    return path


def save_debug_all(debug_dir, image, bits, points, strategy):
    """
    Dump one decode attempt:
      <strategy>_input.png  binarized input, located points in red
      <strategy>_grid.png   sampled module grid, 10px per module
      <strategy>_grid.txt   the grid as text
    """
    os.makedirs(debug_dir, exist_ok=True)
    saved = []

    canvas = cv2.cvtColor(image.to_image(), cv2.COLOR_GRAY2BGR)
    for p in points:
        cv2.circle(canvas, (int(round(p.x)), int(round(p.y))), 4, (0, 0, 255), -1)
    saved.append(_save_img(debug_dir, f"{strategy}_input.png", canvas))
    saved.append(_save_img(debug_dir, f"{strategy}_grid.png", bits.bits, scale=10))

    txt = os.path.join(debug_dir, f"{strategy}_grid.txt")
    with open(txt, 'w') as f:
        f.write(f"{bits.width}x{bits.height}\n")
        f.write(str(bits))
        f.write("\n")
    saved.append(txt)
    return saved
