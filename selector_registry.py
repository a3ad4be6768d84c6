import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict, List, Sequence

import yaml

_APPLIED_LOCK = threading.Lock()
_APPLIED_TARGETS = set()


def _load_registry_file(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        logging.warning("Unable to parse selector registry file: %s (%s)", path, exc)
        return {}


def _selector_value(item: Any) -> str:
    if isinstance(item, dict):
        by_name = str(item.get("by", "CSS_SELECTOR")).upper().strip()
        if by_name != "CSS_SELECTOR":
            logging.warning("Ignoring non-CSS selector entry (by=%s)", by_name)
            return ""
        return str(item.get("value", "")).strip()
    if isinstance(item, str):
        return item.strip()
    return ""


def load_selector_registry(path: str = "selectors.yml") -> Dict[str, List[str]]:
    """Read CSS selector overrides keyed by PageSelectors attribute name; missing file means none."""
    registry_path = Path(path)
    if not registry_path.is_file():
        return {}
    raw = _load_registry_file(registry_path)
    if not isinstance(raw, dict):
        logging.warning("Selector registry %s must map names to lists; ignoring it", path)
        return {}

    registry: Dict[str, List[str]] = {}
    for name, entries in raw.items():
        if not isinstance(entries, list):
            logging.warning("Selector registry entry %s is not a list; skipped", name)
            continue
        values = [value for value in map(_selector_value, entries) if value]
        if values:
            registry[str(name).strip()] = values
    return registry


def merge_selectors(overrides: Sequence[str], defaults: Sequence[str]) -> List[str]:
    """Overrides first, then every default not already listed."""
    merged = list(dict.fromkeys(overrides))
    merged.extend(selector for selector in defaults if selector not in merged)
    return merged


def apply_selector_overrides(target_cls, path: str = "selectors.yml") -> None:
    key = (id(target_cls), path)
    with _APPLIED_LOCK:
        if key in _APPLIED_TARGETS:
            return
        _APPLIED_TARGETS.add(key)

    for name, overrides in load_selector_registry(path).items():
        defaults = getattr(target_cls, name, None)
        if not isinstance(defaults, list):
            logging.warning("Selector registry key %s does not match any page selector", name)
            continue
        setattr(target_cls, name, merge_selectors(overrides, defaults))
        logging.info("Selectors for %s: %d from %s ahead of %d built-in", name, len(overrides), path, len(defaults))
