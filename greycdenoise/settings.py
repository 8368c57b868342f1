"""Denoising settings (which affect the output) and options (which do not)."""

from __future__ import annotations

import enum
from dataclasses import dataclass

# Command-line style flags, in the order they are reported by ``as_string``.
_FLAGS = (
    ("amplitude", "-dt"),
    ("sharpness", "-p"),
    ("anisotropy", "-a"),
    ("alpha", "-alpha"),
    ("sigma", "-sigma"),
    ("pre_blur", "-gauss"),
    ("iterations", "-iter"),
    ("gfact", "-fact"),
    ("dl", "-dl"),
    ("da", "-da"),
    ("gauss_prec", "-prec"),
    ("interpolation", "-interp"),
)


def _format_float(value: float, digits: int) -> str:
    text = f"{float(value):.{digits}f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    if text in ("-0", ""):
        text = "0"
    return text


class DisplayMode(enum.Enum):
    """How a preview of the result is shown."""

    SINGLE = 0
    INSIDE = 1
    SIDE_BY_SIDE = 2


@dataclass
class AlgorithmSettings:
    """Parameters that affect the denoised output.

    The parameters assume colour components in the usual [0, 255] range;
    ``input_scale`` brings other ranges to it (it only scales ``gfact``).
    """

    input_scale: float = 1.0
    pre_blur: float = 0.0
    amplitude: float = 60.0
    sharpness: float = 0.7
    anisotropy: float = 0.3
    alpha: float = 0.6
    sigma: float = 1.1
    gfact: float = 1.0
    dl: float = 0.8
    da: float = 30.0
    gauss_prec: float = 2.0
    interpolation: int = 0
    partial_stage_output: int = 0
    iterations: int = 1
    fast_approx: bool = True
    alt_amplitude: bool = True

    def as_string(self) -> str:
        """Describe the settings that differ from the defaults as flags."""
        defaults = AlgorithmSettings()
        parts = []
        for name, flag in _FLAGS:
            value = getattr(self, name)
            if value != getattr(defaults, name):
                parts.append(f"{flag} {_format_float(value, 3)}")
        if self.fast_approx:
            parts.append("-fast")
        if self.alt_amplitude:
            parts.append("-alt")
        return " ".join(parts)


@dataclass
class AlgorithmOptions:
    """Configuration that does not affect the output.

    ``nb_threads``: zero uses one thread per processor, a positive value that
    many threads, and a negative value that many fewer than processors.
    """

    nb_threads: int = 0
    display_mode: DisplayMode = DisplayMode.SINGLE