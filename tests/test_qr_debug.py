import os

import cv2
import numpy as np
import pytest

import qr_debug
from bit_matrix import BitMatrix
from qr_errors import FormatError, NotFoundError
from qr_reader import QRCodeReader
from qr_result import ResultPoint


def test_debug_dump_writes_images_and_text(tmp_path, render_symbol, make_symbol):
    modules = make_symbol(21)
    image = render_symbol(modules, 4, 8)
    saved = qr_debug.save_debug_all(str(tmp_path / "dbg"), image, BitMatrix.from_array(modules),
                                    [ResultPoint(20.0, 20.0)], "pure")

    assert [os.path.basename(p) for p in saved] == ["pure_input.png", "pure_grid.png", "pure_grid.txt"]
    grid = cv2.imread(saved[1], cv2.IMREAD_GRAYSCALE)
    assert grid.shape == (210, 210)
    assert grid[5, 5] == 0 and grid[15, 15] == 255
    with open(saved[2]) as f:
        assert f.readline().strip() == "21x21"


def test_reader_writes_debug_output_when_enabled(tmp_path, monkeypatch, render_symbol, make_symbol):
    debug_dir = tmp_path / "debug"
    monkeypatch.setattr(qr_debug, 'DEBUG_DIR', str(debug_dir))

    def no_finders(image, options):
        raise NotFoundError("no finders")

    class RejectingDecoder:
        def decode(self, bits, options=None):
            raise FormatError("unreadable format information")

    with pytest.raises(NotFoundError, match="no finders"):
        QRCodeReader(RejectingDecoder(), no_finders).decode(render_symbol(make_symbol(21), 4, 8))
    assert (debug_dir / "pure_grid.txt").exists()
    assert not (debug_dir / "detected_grid.txt").exists()
    assert np.count_nonzero(cv2.imread(str(debug_dir / "pure_grid.png"), cv2.IMREAD_GRAYSCALE) == 0) > 0
