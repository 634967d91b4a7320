"""Galois Field GF(2^8) and Reed-Solomon error correction for QR codewords."""

# Log/antilog tables for GF(256) with the QR primitive polynomial
# x^8 + x^4 + x^3 + x^2 + 1. Built once at import and never written to,
# so decoders can share them across threads.
PRIMITIVE = 0x11D
EXP = [0] * 512
LOG = [0] * 256

_x = 1
for _i in range(255):
    EXP[_i], LOG[_x] = _x, _i
    _x = (_x << 1) ^ PRIMITIVE if _x & 0x80 else _x << 1
for _i in range(255, 512):
    EXP[_i] = EXP[_i - 255]
del _x, _i


def gf_mul(a, b):
    return 0 if a == 0 or b == 0 else EXP[LOG[a] + LOG[b]]


def gf_div(a, b):
    if b == 0:
        raise ZeroDivisionError("GF(256) division by zero")
    return 0 if a == 0 else EXP[(LOG[a] - LOG[b]) % 255]


def gf_inv(a):
    return EXP[255 - LOG[a]]


def poly_mul(p1, p2):
    r = [0] * (len(p1) + len(p2) - 1)
    for i, c1 in enumerate(p1):
        for j, c2 in enumerate(p2):
            r[i + j] ^= gf_mul(c1, c2)
    return r


def poly_eval(p, x):
    """Horner evaluation, coefficients highest power first."""
    r = 0
    for c in p:
        r = gf_mul(r, x) ^ c
    return r


class ReedSolomon:
    """
    Decoder for one RS block with `nsym` check symbols (generator roots
    alpha^0 .. alpha^(nsym-1), as QR uses). Corrects up to nsym // 2
    symbol errors; raises ValueError when the block is beyond repair.
    """

    def __init__(self, nsym):
        if nsym < 1:
            raise ValueError(f"Need at least one check symbol, got {nsym}")
        self.nsym = nsym

    def syndromes(self, msg):
        return [poly_eval(msg, EXP[i]) for i in range(self.nsym)]

    def _berlekamp_massey(self, synd):
        """Error locator, lowest power first."""
        C, B = [1], [1]
        L, m, b = 0, 1, 1
        for n in range(len(synd)):
            d = synd[n]
            for i in range(1, L + 1):
                if i < len(C):
                    d ^= gf_mul(C[i], synd[n - i])
            if d == 0:
                m += 1
                continue
            coef = gf_div(d, b)
            T = list(C)
            C = C + [0] * max(0, len(B) + m - len(C))
            for i, bi in enumerate(B):
                C[i + m] ^= gf_mul(coef, bi)
            if 2 * L <= n:
                L, B, b, m = n + 1 - L, T, d, 1
            else:
                m += 1
        while len(C) > L + 1 and C[-1] == 0:
            C.pop()
        return C, L

    def _error_positions(self, err_loc, n):
        # Reversed locator has roots at X_j = alpha^(n-1-pos)
        return [n - 1 - i for i in range(n) if poly_eval(err_loc, EXP[i]) == 0]

    def _correct(self, msg, synd, positions):
        # Forney: e_j = X_j * Omega(X_j^-1) / Lambda'(X_j^-1)
        loc = [1]
        for p in positions:
            loc = poly_mul(loc, [EXP[len(msg) - 1 - p], 1])
        omega = poly_mul(synd[::-1], loc)[-self.nsym:]
        n = len(loc) - 1
        deriv = [loc[i] if (n - i) % 2 == 1 else 0 for i in range(n)] or [0]
        msg = list(msg)
        for p in positions:
            xi = EXP[len(msg) - 1 - p]
            d = poly_eval(deriv, gf_inv(xi))
            if d == 0:
                raise ValueError(f"Cannot compute error magnitude at {p}")
            msg[p] ^= gf_mul(xi, gf_div(poly_eval(omega, gf_inv(xi)), d))
        return msg

    def decode(self, msg):
        """Return the corrected data symbols (check symbols stripped)."""
        if len(msg) <= self.nsym:
            raise ValueError(f"Block of {len(msg)} symbols has no room for {self.nsym} check symbols")
        synd = self.syndromes(msg)
        if max(synd) == 0:
            return list(msg[:-self.nsym])

        err_loc, num_errors = self._berlekamp_massey(synd)
        if num_errors > self.nsym // 2:
            raise ValueError("Too many errors")
        positions = self._error_positions(err_loc, len(msg))
        if len(positions) != num_errors:
            raise ValueError("Cannot locate errors")

        corrected = self._correct(msg, synd, positions)
        if max(self.syndromes(corrected)) != 0:
            raise ValueError("Correction failed")
        return corrected[:-self.nsym]
