"""
Synthetic vital-sign history and the CSV record layout.

Seeded series follow slow sinusoidal baselines with uniform noise so charts
look plausible:

- HR around 70 bpm (period ~6h)
- ABP around 120/80 mmHg (period ~12h)
- SpO2 around 97% (period ~18h)
- RESP around 16 breaths/min (period ~9h)
"""

import math
import random

from core.domain.models import VitalSample

CSV_FIELDS: tuple[str, ...] = ("Time", "HR", "ABPsys", "ABPdia", "SpO2", "RESP")
CSV_HEADER = ",".join(CSV_FIELDS)


def synthesize_sample(timestamp: float, offset_seconds: float, rng: random.Random) -> VitalSample:
    """One reading `offset_seconds` into a seeded series."""
    i = offset_seconds
    return VitalSample(
        timestamp=round(timestamp, 5),
        heart_rate=round(70 + math.sin(i / 3600) * 10 + (rng.random() - 0.5) * 6),
        systolic_pressure=round(120 + math.sin(i / 7200) * 15 + (rng.random() - 0.5) * 8),
        diastolic_pressure=round(80 + math.sin(i / 7200) * 10 + (rng.random() - 0.5) * 6),
        oxygen_saturation=round(97 + math.sin(i / 10800) * 2 + (rng.random() - 0.5) * 1),
        respiration_rate=round(16 + math.sin(i / 5400) * 3 + (rng.random() - 0.5) * 2),
    )


def generate_history(
    end_time: float,
    hours: float = 24.0,
    interval_seconds: float = 10.0,
    rng: random.Random | None = None,
) -> list[VitalSample]:
    """Samples every `interval_seconds` covering `hours` up to `end_time`, oldest first."""
    rng = rng or random.Random()
    span = hours * 3600
    count = int(span // interval_seconds)
    start = end_time - span
    return [
        synthesize_sample(start + n * interval_seconds, n * interval_seconds, rng)
        for n in range(count)
    ]


def encode_sample(sample: VitalSample) -> list[str]:
    """CSV row for `sample` (timestamp with five decimals)."""
    return [
        f"{sample.timestamp:.5f}",
        str(sample.heart_rate),
        str(sample.systolic_pressure),
        str(sample.diastolic_pressure),
        str(sample.oxygen_saturation),
        str(sample.respiration_rate),
    ]


def decode_row(row: dict[str, str]) -> VitalSample:
    """Parse a CSV row keyed by `CSV_FIELDS`. Raises ValueError/KeyError when malformed."""
    return VitalSample(
        timestamp=float(row["Time"]),
        heart_rate=int(row["HR"]),
        systolic_pressure=int(row["ABPsys"]),
        diastolic_pressure=int(row["ABPdia"]),
        oxygen_saturation=int(row["SpO2"]),
        respiration_rate=int(row["RESP"]),
    )
