import numpy as np
import pytest

from bit_matrix import BitMatrix

FINDER = np.array([[1,1,1,1,1,1,1],[1,0,0,0,0,0,1],[1,0,1,1,1,0,1],[1,0,1,1,1,0,1],
                   [1,0,1,1,1,0,1],[1,0,0,0,0,0,1],[1,1,1,1,1,1,1]], dtype=bool)


def render(modules, module_size, quiet):
    """Blow a module grid up to pixels with a light quiet zone of `quiet` px."""
    pixels = np.kron(np.asarray(modules, dtype=np.uint8), np.ones((module_size, module_size), dtype=np.uint8))
    return BitMatrix.from_array(np.pad(pixels, quiet, constant_values=0))


def synthetic_symbol(dimension, seed=7):
    """
    QR-shaped module grid: three finders with light separators, random
    data elsewhere, light row 0 / column 0 between the finders, dark
    bottom-right module.
    """
    d = dimension
    m = np.random.RandomState(seed).rand(d, d) < 0.5
    m[0:8, 0:8] = False
    m[0:8, d-8:d] = False
    m[d-8:d, 0:8] = False
    m[0:7, 0:7] = FINDER
    m[0:7, d-7:d] = FINDER
    m[d-7:d, 0:7] = FINDER
    m[0, 8:d-8] = False
    m[8:d-8, 0] = False
    m[d-1, d-1] = True
    return m


def segno_modules(text, **kwargs):
    segno = pytest.importorskip("segno")
    kwargs.setdefault("boost_error", False)
    qr = segno.make(text, micro=False, **kwargs)
    return np.array([list(row) for row in qr.matrix], dtype=bool)


@pytest.fixture
def finder():
    return FINDER.copy()


@pytest.fixture
def render_symbol():
    return render


@pytest.fixture
def make_symbol():
    return synthetic_symbol


@pytest.fixture
def make_segno():
    return segno_modules
