"""
Template Substitution - Capture parameters in reply strings
===========================================================

Literal string handlers may reference regex captures with
``{identifier}`` placeholders:

- ``{1}`` / ``{name}`` is replaced by ``params["1"]`` / ``params["name"]``
- placeholders whose key is absent from params are left verbatim
- ``\\{`` escapes a placeholder; the backslash is consumed
"""

import re
from typing import Any, Mapping, Optional

_PLACEHOLDER = re.compile(r"\\\{|\{(\w+)\}")


def substitute(template: str, params: Optional[Mapping[str, Any]]) -> str:
    """
    Render a template string against capture parameters.

    Args:
        template: String with ``{identifier}`` placeholders
        params: Capture parameters of the current message

    Returns:
        The rendered string
    """
    params = params or {}

    def replace(match):
        key = match.group(1)
        if key is None:
            # escaped brace
            return "{"
        if key in params:
            return str(params[key])
        return match.group(0)

    return _PLACEHOLDER.sub(replace, template)

