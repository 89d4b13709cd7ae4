from __future__ import annotations

import sys
from typing import Any

import yaml


def render_yaml(payload: Any) -> str:
    return yaml.safe_dump(payload, sort_keys=False).rstrip()


def print_yaml(payload: Any) -> None:
    sys.stdout.write(render_yaml(payload) + "\n")


def print_error(message: str) -> None:
    sys.stderr.write(f"error: {message}\n")
