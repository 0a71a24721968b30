# /chatflow/workflows/variables.py

"""
Per-session variable environment.

Keys are plain identifiers, values are always strings, last write wins.
`{{name}}` placeholders in any text field are replaced by the stored value;
placeholders for unset names are left exactly as written. There is no
escaping syntax for a literal `{{...}}`.
"""

import re
from typing import Any, Dict, Optional

PLACEHOLDER_PATTERN = re.compile(r"\{\{(\w+)\}\}")


class VariableEnvironment:
    def __init__(self, values: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, str] = {}
        for name, value in (values or {}).items():
            self.set(name, value)

    def get(self, name: str) -> Optional[str]:
        return self._values.get(name)

    def set(self, name: str, value: Any) -> None:
        self._values[name] = "" if value is None else str(value)

    def interpolate(self, template: Optional[str]) -> str:
        if not template:
            return ""

        def _replace(match: re.Match) -> str:
            value = self._values.get(match.group(1))
            return match.group(0) if value is None else value

        return PLACEHOLDER_PATTERN.sub(_replace, template)

    def as_dict(self) -> Dict[str, str]:
        return dict(self._values)

    def __contains__(self, name: str) -> bool:
        return name in self._values
