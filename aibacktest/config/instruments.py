"""
Instrument metadata.

P&L is expressed in pips, and the size of a pip depends on how the
instrument is quoted: most FX pairs move in steps of ``0.0001`` while
JPY-quoted pairs and metals use ``0.01``.  Explicit per-symbol
overrides from the configuration always win.
"""

from __future__ import annotations

import re
from typing import Optional

from .schema import InstrumentConfig


_SYMBOL_RE = re.compile(r"^[A-Z]{6}$")

_TWO_DECIMAL_PREFIXES = ("XAU", "XAG")


def normalize_symbol(raw: str) -> str:
    """Normalise user input such as ``eur/usd`` to ``EURUSD``."""
    return str(raw or "").strip().upper().replace("/", "").replace("_", "").replace("-", "")


def is_valid_symbol(symbol: str) -> bool:
    """Return ``True`` for a six-letter currency pair code.

    Only case is folded.  Separators such as ``/`` are rejected here;
    run user input through `normalize_symbol` first.
    """
    return bool(_SYMBOL_RE.match(str(symbol or "").upper()))


def pip_size_for(symbol: str, instruments: Optional[InstrumentConfig] = None) -> float:
    """Return the pip size for ``symbol``."""
    instruments = instruments or InstrumentConfig()
    sym = normalize_symbol(symbol)
    if sym in instruments.pip_sizes:
        return float(instruments.pip_sizes[sym])
    if sym.endswith("JPY") or sym.startswith(_TWO_DECIMAL_PREFIXES):
        return 0.01
    return instruments.default_pip_size
