"""Loader for the initial machine dataset.

The seed file is a JSON object keyed by machine name, e.g.::

    {
      "Presse 1": {
        "identifikation": "PR-001",
        "temperatur": "45,5°",
        "durchgängigeLaufzeit": "120 Minuten",
        "Motor": {
          "aktuelleLeistung": "75%",
          "betriebsminutenGesamt": "10234,5 Minuten",
          "letzteWartung": "01.01.2025"
        }
      }
    }
"""

from __future__ import annotations

import json
import logging
import math
import re
from pathlib import Path
from typing import Any, List, Optional

import numpy as np
from jsonschema import Draft7Validator

from simulators.machine_sim.lib.models import MachineSeed
from simulators.machine_sim.lib.metrics import round3

LOG = logging.getLogger("machine_sim.seed")

_NUMBER_OR_TEXT = {"type": ["number", "string"]}

SEED_SCHEMA = {
    "type": "object",
    "minProperties": 1,
    "additionalProperties": {
        "type": "object",
        "required": ["temperatur", "durchgängigeLaufzeit", "Motor"],
        "properties": {
            "identifikation": {"type": ["string", "null"]},
            "temperatur": _NUMBER_OR_TEXT,
            "durchgängigeLaufzeit": _NUMBER_OR_TEXT,
            "geschwindigkeit": _NUMBER_OR_TEXT,
            "Motor": {
                "type": "object",
                "required": ["aktuelleLeistung", "betriebsminutenGesamt"],
                "properties": {
                    "aktuelleLeistung": _NUMBER_OR_TEXT,
                    "betriebsminutenGesamt": _NUMBER_OR_TEXT,
                    "letzteWartung": {"type": ["string", "null"]},
                },
            },
        },
    },
}

_UNITS = re.compile(r"(°c?|%|minuten|m/s)", re.IGNORECASE)


class SeedError(Exception):
    pass


def parse_number(raw: Any) -> float:
    """Parse '45,5°', '75%', '120 Minuten' or a plain number."""
    if isinstance(raw, bool):
        raise ValueError(f"not a number: {raw!r}")
    if isinstance(raw, (int, float)):
        v = float(raw)
    else:
        v = float(_UNITS.sub("", str(raw)).strip().replace(",", "."))
    if not math.isfinite(v):
        raise ValueError(f"not a finite number: {raw!r}")
    return v


def load_seed(path: str | Path, rng: Optional[np.random.Generator] = None) -> List[MachineSeed]:
    """
    Read and validate the seed dataset.

    Raises:
        SeedError: the file cannot be read, is not valid JSON, does not match
            the seed schema or contains unparseable numbers.
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except (OSError, json.JSONDecodeError) as e:
        raise SeedError(f"failed to read seed file {path}: {e}") from e

    errors = sorted(Draft7Validator(SEED_SCHEMA).iter_errors(data), key=lambda e: list(e.path))
    if errors:
        first = errors[0]
        where = "/".join(str(p) for p in first.path) or "<root>"
        raise SeedError(f"seed file {path} invalid at {where}: {first.message}")

    rng = rng if rng is not None else np.random.default_rng()
    seeds: List[MachineSeed] = []
    for name, m in data.items():
        motor = m["Motor"]
        try:
            speed = m.get("geschwindigkeit")
            seeds.append(MachineSeed(
                name=name,
                identification=m.get("identifikation"),
                last_maintenance=motor.get("letzteWartung"),
                temperature=round3(parse_number(m["temperatur"])),
                power=round3(parse_number(motor["aktuelleLeistung"])),
                # datasets without speed start somewhere in [1, 4] m/s
                speed=round3(parse_number(speed) if speed is not None else rng.uniform(1.0, 4.0)),
                uptime_minutes=round3(parse_number(motor["betriebsminutenGesamt"])),
                runtime_minutes=round3(parse_number(m["durchgängigeLaufzeit"])),
            ))
        except ValueError as e:
            raise SeedError(f"machine {name!r} in {path}: {e}") from e
    LOG.info("Loaded %d machine(s) from %s", len(seeds), path)
    return seeds
