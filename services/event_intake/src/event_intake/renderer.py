"""Jinja2 template rendering for notification content."""

from typing import Any

from jinja2 import StrictUndefined
from jinja2.sandbox import SandboxedEnvironment

# Bodies are plain text; HTML escaping would corrupt SMS and push content.
_env = SandboxedEnvironment(
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=False,
)


def render_template(template_str: str, context: dict[str, Any]) -> str:
    """Render a Jinja2 template string with the given context.

    Uses SandboxedEnvironment to prevent SSTI and StrictUndefined
    to raise on missing variables. Context values are converted to strings;
    ``None`` renders as an empty string.
    """
    str_context = {k: "" if v is None else str(v) for k, v in context.items()}
    template = _env.from_string(template_str)
    return template.render(str_context)
