"""Helper utilities for reading configuration sections from Config objects or plain dicts."""
from __future__ import annotations

from typing import Any, Dict


def get_config_section(source: Any, section: str) -> Dict:
    """Return a section as a plain dict from a Config, a SectionProxy, or a dict."""
    if source is None:
        return {}

    if isinstance(source, dict):
        candidate = source.get(section, {})
        return dict(candidate) if isinstance(candidate, dict) else {}

    getter = getattr(source, 'get', None)
    if callable(getter):
        candidate = getter(section, {})
        to_dict = getattr(candidate, 'to_dict', None)
        if callable(to_dict):
            return dict(to_dict())
        if isinstance(candidate, dict):
            return dict(candidate)

    return {}
