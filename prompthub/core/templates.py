"""Template variables: `{{name}}` placeholders inside prompt content."""

import re

_VARIABLE_RE = re.compile(r"\{\{([^}]+)\}\}")


def parse_template_variables(content: str) -> list[str]:
    """Return placeholder names in first-seen order, trimmed and de-duplicated.

    Examples:
        >>> parse_template_variables("Translate {{ text }} to {{lang}}, {{text}}")
        ['text', 'lang']
    """
    names = (match.group(1).strip() for match in _VARIABLE_RE.finditer(content))
    return list(dict.fromkeys(name for name in names if name))


def fill_template(content: str, values: dict[str, str]) -> str:
    """Substitute known placeholders; unknown ones are left as `{{name}}`."""

    def _replace(match: re.Match) -> str:
        name = match.group(1).strip()
        return values.get(name, f"{{{{{name}}}}}")

    return _VARIABLE_RE.sub(_replace, content)
