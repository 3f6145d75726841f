"""Render Jinja2 templates into ECS request documents."""
import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from jinja2 import ChainableUndefined, Environment, StrictUndefined
from jinja2 import TemplateError as Jinja2TemplateError

from ecs_rollout.exceptions import TemplateError
from ecs_rollout.templates.loader import is_uri, read_file_or_uri

logger = logging.getLogger(__name__)


def render_template(text: str, values: Dict[str, Any], strict: bool = False,
                    name: str = "<template>") -> str:
    """Render template text with ``{"Values": values}`` as the context.

    In strict mode a reference to a missing value is an error; otherwise it
    renders as an empty string.
    """
    environment = Environment(
        undefined=StrictUndefined if strict else ChainableUndefined,
        keep_trailing_newline=True,
    )
    logger.debug(f"Rendering template {name} (strict={strict})")
    try:
        return environment.from_string(text).render(Values=values)
    except Jinja2TemplateError as e:
        logger.error(f"Failed to render template {name}: {e}")
        raise TemplateError(f"Failed to render template {name}: {e}") from e


def render_document(location: str, values: Dict[str, Any], strict: bool = False,
                    s3_client=None) -> Dict[str, Any]:
    """Load, render and JSON-decode one template into a dict."""
    text = read_file_or_uri(location, s3_client=s3_client)
    rendered = render_template(text, values, strict=strict, name=location)
    try:
        document = json.loads(rendered)
    except ValueError as e:
        raise TemplateError(f"Error parsing JSON of {location}: {e}") from e
    if not isinstance(document, dict):
        raise TemplateError(f"{location} must render to a JSON object")
    return document


def parse_task_definition(location: str, values: Dict[str, Any], strict: bool = False,
                          s3_client=None) -> Dict[str, Any]:
    """RegisterTaskDefinition input rendered from a template."""
    return render_document(location, values, strict=strict, s3_client=s3_client)


def parse_run_task(location: str, values: Dict[str, Any], strict: bool = False,
                   s3_client=None) -> Dict[str, Any]:
    """RunTask input rendered from a template."""
    return render_document(location, values, strict=strict, s3_client=s3_client)


def resolve_template_path(path: str, definition_filename: Optional[str] = None) -> str:
    """A directory is joined with the definition filename; files and URIs pass through."""
    if definition_filename and not is_uri(path) and Path(path).is_dir():
        return str(Path(path) / definition_filename)
    return path
