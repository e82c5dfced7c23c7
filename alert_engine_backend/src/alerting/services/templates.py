from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Optional

_PLACEHOLDER = re.compile(r"\{\{([^{}]+)\}\}")


# PUBLIC_INTERFACE
def render_template(template: Optional[str], data: Mapping) -> Optional[str]:
    """Replace each {{field}} with str(data[field]); unknown placeholders are left verbatim.

    Returns None when there is no template, so callers can fall back to a default.
    """
    if not template:
        return None

    def _sub(m: "re.Match[str]") -> str:
        key = m.group(1).strip()
        if key in data:
            return str(data[key])
        return m.group(0)

    return _PLACEHOLDER.sub(_sub, template)


# PUBLIC_INTERFACE
def default_description(rule_name: str, device_id: str) -> str:
    """Description used when a rule has no template."""
    return f"{rule_name} (device: {device_id})"
