#!/usr/bin/env python
"""Export the edge OpenAPI document to .well-known files for agent manifests."""

from __future__ import annotations

import json
import os
from pathlib import Path

import yaml

from edge.app import app


def main() -> None:
    spec = app.openapi()
    base = os.environ.get("PUBLIC_BASE_URL") or os.environ.get("SERVER_URL")
    if base:
        spec = {**spec, "servers": [{"url": base.rstrip("/")}]}

    root = Path(__file__).resolve().parent.parent
    target = root / ".well-known"
    target.mkdir(parents=True, exist_ok=True)

    json_path = target / "openapi.json"
    yaml_path = target / "openapi.yaml"

    json_path.write_text(json.dumps(spec, indent=2, ensure_ascii=False), encoding="utf-8")
    yaml_path.write_text(yaml.safe_dump(spec, sort_keys=False, allow_unicode=True), encoding="utf-8")

    print(f"Wrote {json_path} ({len(spec.get('paths', {}))} paths)")
    print(f"Wrote {yaml_path}")


if __name__ == "__main__":
    main()
