"""
Utilities for expanding environment variable references in strings.
"""
import re
from typing import Dict, Mapping

# $VAR, ${VAR}, ${VAR:-default}
_REFERENCE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_.]*)(?::-(?P<default>[^}]*))?\}|(?P<plain>[A-Za-z_][A-Za-z0-9_]*))")


class EnvironmentInterpolator:
    """
    Expands variable references against a context.
    Supports $VAR, ${VAR} and ${VAR:-default}. References that cannot be
    resolved are left untouched so later expansion stages can still see them.
    """

    @staticmethod
    def interpolate(template: str, context: Mapping[str, str]) -> str:
        """
        Interpolates variable references in the template string.

        :param template: The string containing references.
        :param context: Variables available for expansion.
        :return: The expanded string.
        """
        def replace(match):
            name = match.group("braced") or match.group("plain")
            default = match.group("default")
            value = context.get(name)
            if value:
                return value
            if default is not None:
                return default
            if value is not None:
                return value
            return match.group(0)

        return _REFERENCE.sub(replace, template)

    @classmethod
    def expand_all(cls, variables: Mapping[str, str], context: Mapping[str, str]) -> Dict[str, str]:
        """
        Expands every value, later variables can refer to earlier ones.

        :param variables: Ordered variables to expand.
        :param context: Variables already in effect.
        :return: The expanded variables.
        """
        resolved = dict(context)
        expanded = {}
        for name, value in variables.items():
            expanded[name] = cls.interpolate(value, resolved)
            resolved[name] = expanded[name]
        return expanded
