"""
Versioned prompt loader.

Prompts live in YAML files grouped by domain:

    v1/
    ├── shared/   # System prompts reused across domains
    ├── canvas/   # Intent classifier and artist prompts for the drawing pipeline
    └── voice/    # Realtime session instructions and workspace analysis

Usage:
    from codraw.prompts.loader import get_prompt, render_prompt

    template = get_prompt("canvas_artist")
    rendered = render_prompt("canvas_classifier", user_input="draw a cat")
"""

from __future__ import annotations

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from jinja2 import Environment, StrictUndefined

logger = logging.getLogger(__name__)

_PROMPTS_DIR = Path(__file__).resolve().parent
_VERSION = "v1"

_DOMAIN_DIRS = [
    "shared",
    "canvas",
    "voice",
]

# Rendered into every template that references them unless overridden.
_SHARED_KEYS = ("system_prompt_json",)


@lru_cache(maxsize=1)
def _jinja_env() -> Environment:
    return Environment(
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


def _read_yaml(path: Path) -> dict[str, Any]:
    with path.open("r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return data if isinstance(data, dict) else {}


def _template_of(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, dict) and isinstance(value.get("template"), str):
        return value["template"]
    return None


@lru_cache(maxsize=1)
def _load_prompts() -> dict[str, Any]:
    """Load every versioned prompt; a template with invalid Jinja2 syntax raises ValueError."""
    prompts: dict[str, Any] = {}
    version_dir = _PROMPTS_DIR / _VERSION
    if not version_dir.exists():
        return prompts

    for domain in _DOMAIN_DIRS:
        domain_dir = version_dir / domain
        if not domain_dir.exists():
            continue
        for yaml_file in sorted(domain_dir.glob("*.yaml")):
            try:
                data = _read_yaml(yaml_file)
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to read %s: %s", yaml_file, e)
                continue

            for key, value in data.items():
                template = _template_of(value)
                if template is None:
                    continue
                try:
                    _jinja_env().parse(template)
                except Exception as e:
                    raise ValueError(f"Invalid Jinja2 template in {yaml_file}:{key}: {e}") from e

            prompts.update(data)

    return prompts


def clear_cache() -> None:
    _load_prompts.cache_clear()


def get_prompt(name: str) -> str:
    """
    Get a prompt template by name.

    Supports plain string values and mappings with a ``template`` key
    (plus optional ``required_variables``).

    Raises:
        KeyError: If the prompt is missing or has no template
    """
    template = _template_of(_load_prompts().get(name))
    if template is None:
        raise KeyError(f"Prompt '{name}' not found or not a string")
    return template


def list_prompts(domain: str | None = None) -> list[str]:
    if domain is None:
        return list(_load_prompts().keys())

    domain_dir = _PROMPTS_DIR / _VERSION / domain
    if not domain_dir.exists():
        return []
    names: list[str] = []
    for yaml_file in sorted(domain_dir.glob("*.yaml")):
        names.extend(_read_yaml(yaml_file).keys())
    return names


def extract_template_variables(template: str) -> set[str]:
    """Base variable names referenced by ``{{ }}`` and ``{% if/for %}`` blocks."""
    variables = set(re.findall(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_]*)", template))
    variables.update(re.findall(r"\{%\s*(?:if|for|elif)\s+([a-zA-Z_][a-zA-Z0-9_]*)", template))
    return variables


def check_required_variables(name: str, context: dict[str, Any]) -> list[str]:
    """Return the variables ``name`` needs that ``context`` does not provide."""
    value = _load_prompts().get(name)
    required = value.get("required_variables") if isinstance(value, dict) else None
    if required:
        return [v for v in required if v not in context]

    variables = extract_template_variables(get_prompt(name)) - set(_SHARED_KEYS)
    return sorted(v for v in variables if v not in context)


def render_prompt(name: str, validate: bool = False, **context: Any) -> str:
    """
    Render a prompt template with the given context.

    Shared prompts are included in the context automatically.

    Raises:
        KeyError: If the prompt does not exist
        ValueError: If validate=True and required variables are missing
    """
    prompts = _load_prompts()
    for shared_key in _SHARED_KEYS:
        if shared_key not in context and shared_key in prompts:
            context[shared_key] = prompts[shared_key]

    if validate:
        missing = check_required_variables(name, context)
        if missing:
            raise ValueError(f"Missing required variables for '{name}': {missing}")

    return _jinja_env().from_string(get_prompt(name)).render(**context).strip()
