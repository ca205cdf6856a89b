import textwrap
from string import Template
from typing import Any


def render_prompt(template: str, **values: Any) -> str:
    """
    Renders a $-placeholder template. Unknown placeholders are left untouched so
    literal dollar signs in prompts survive rendering.
    """
    body = textwrap.dedent(template).strip()
    mapping = {k: "" if v is None else str(v) for k, v in values.items()}
    return Template(body).safe_substitute(**mapping)
