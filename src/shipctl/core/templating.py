"""Jinja2 rendering of remote shell command templates."""

import shlex
from typing import Any

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError

from shipctl.core.exceptions import ConfigError


def shquote(value: Any) -> str:
    """Quote ``value`` for safe use as one shell word."""
    return shlex.quote(str(value))


_env = Environment(loader=BaseLoader(), undefined=StrictUndefined, keep_trailing_newline=True)
_env.filters["shquote"] = shquote


def render_command(template: str, **variables: Any) -> str:
    """Render a command template.

    Raises:
        ConfigError: If the template is invalid or references an unknown variable
    """
    try:
        return _env.from_string(template).render(**variables)
    except TemplateError as e:
        raise ConfigError(f"Cannot render command template: {e}")
