from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import yaml

from entities.payload import MalformedPayload, parse_entities
from entities.types import PointEntity


def _read_rows(path: Path) -> Any:
    raw = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        data = yaml.safe_load(raw) or {}
    else:
        data = json.loads(raw)
    # Accept both a bare list and the `{data: [...]}` envelope the service returns.
    if isinstance(data, dict):
        return data.get("entities", data.get("data"))
    return data


def load_entities_file(path: Path) -> list[PointEntity]:
    """
    Load agencies/properties from a YAML or JSON fixture.
    """
    try:
        return parse_entities(_read_rows(path))
    except MalformedPayload as e:
        raise ValueError(f"Invalid entities file {path}: {e}") from e


def load_entities_dir(root: Path) -> list[PointEntity]:
    out: list[PointEntity] = []
    seen: set[tuple[str, str]] = set()
    for p in sorted(root.glob("*"), key=lambda x: str(x)):
        if p.suffix.lower() not in {".yaml", ".yml", ".json"}:
            continue
        for e in load_entities_file(p):
            key = (e.id, e.kind.value)
            if key in seen:
                continue
            seen.add(key)
            out.append(e)
    return out
