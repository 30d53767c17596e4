"""Placeholder rendering and Jinja2-backed named templates."""

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

import jinja2
import yaml

from .exceptions import TemplateError
from .schemas import Recipient

DEFAULT_DISPLAY_NAME = "user"

_PLACEHOLDER = re.compile(r"\{\{\s*(.+?)\s*\}\}")


def render(template: str, variables: Mapping[str, str]) -> str:
    """Replace every ``{{key}}`` with ``variables[key]``.

    A key is whatever sits between the braces, trimmed, so keys may contain
    spaces, digits or non-ASCII letters. Unknown keys are left in place
    verbatim. Substitution is a single pass,
    so a value that itself looks like a placeholder is not expanded again.
    """
    def _substitute(match: "re.Match[str]") -> str:
        key = match.group(1)
        if key in variables:
            return str(variables[key])
        return match.group(0)

    return _PLACEHOLDER.sub(_substitute, template)


def build_variables(recipient: Recipient, task_variables: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Per-recipient variables; task-level values override the defaults."""
    variables = {
        "name": recipient.name or DEFAULT_DISPLAY_NAME,
        "id": str(recipient.id),
    }
    if recipient.email:
        variables["email"] = recipient.email
    if task_variables:
        variables.update(task_variables)
    return variables


class _EchoUndefined(jinja2.Undefined):
    """Undefined that renders back as the placeholder it came from."""

    def __str__(self) -> str:
        return "{{ %s }}" % self._undefined_name


@dataclass
class TemplateMetadata:
    """Metadata about a named template."""

    name: str
    subject: Optional[str] = None
    description: Optional[str] = None


@dataclass
class InlineContent:
    """Subject and body given inline on the task."""

    subject: Optional[str]
    body: str

    def render(self, variables: Mapping[str, str]) -> Tuple[Optional[str], str]:
        subject = render(self.subject, variables) if self.subject is not None else None
        return subject, render(self.body, variables)


@dataclass
class NamedTemplateContent:
    """Subject and body loaded from the template directory."""

    name: str
    subject: Optional[jinja2.Template]
    body: jinja2.Template

    def render(self, variables: Mapping[str, str]) -> Tuple[Optional[str], str]:
        try:
            subject = self.subject.render(**variables) if self.subject is not None else None
            return subject, self.body.render(**variables)
        except jinja2.TemplateError as e:
            raise TemplateError(f"Error rendering template {self.name}: {e}", cause=e) from e


class TemplateLoader:
    """Loads named notification templates.

    A template named ``welcome`` consists of ``welcome.yaml`` (metadata with the
    subject line) and ``welcome.jinja2`` (the body).
    """

    def __init__(self, template_dir: str):
        """Initialize the template loader.

        Args:
            template_dir: Path to the directory containing templates
        """
        self.template_dir = Path(template_dir)
        self.env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(self.template_dir)),
            autoescape=jinja2.select_autoescape(
                enabled_extensions=("html", "xml"), default_for_string=False
            ),
            undefined=_EchoUndefined,
        )
        self._cache: Dict[str, TemplateMetadata] = {}

    def load_template(self, template_name: str) -> jinja2.Template:
        """Load the body template.

        Raises:
            TemplateError: If template cannot be loaded
        """
        try:
            return self.env.get_template(f"{template_name}.jinja2")
        except jinja2.TemplateNotFound as e:
            raise TemplateError(f"Template not found: {template_name}", cause=e) from e
        except jinja2.TemplateError as e:
            raise TemplateError(f"Error loading template {template_name}: {e}", cause=e) from e

    def load_metadata(self, template_name: str) -> TemplateMetadata:
        """Load template metadata from its YAML file.

        Raises:
            TemplateError: If metadata file cannot be loaded or parsed
        """
        if template_name in self._cache:
            return self._cache[template_name]

        metadata_path = self.template_dir / f"{template_name}.yaml"
        if not metadata_path.exists():
            raise TemplateError(f"Template metadata not found: {metadata_path}")

        try:
            with open(metadata_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise TemplateError(f"Error parsing metadata {metadata_path}: {e}", cause=e) from e

        if not isinstance(data, dict):
            raise TemplateError(f"Empty or malformed metadata file: {metadata_path}")

        metadata = TemplateMetadata(
            name=data.get("name", template_name),
            subject=data.get("subject"),
            description=data.get("description"),
        )
        self._cache[template_name] = metadata
        return metadata

    def prepare(self, template_name: str) -> NamedTemplateContent:
        """Compile subject and body once so every recipient reuses them."""
        metadata = self.load_metadata(template_name)
        body = self.load_template(template_name)
        try:
            subject = self.env.from_string(metadata.subject) if metadata.subject else None
        except jinja2.TemplateError as e:
            raise TemplateError(f"Invalid subject in template {template_name}: {e}", cause=e) from e
        return NamedTemplateContent(name=template_name, subject=subject, body=body)

    def list_templates(self) -> List[str]:
        """List all available templates."""
        if not self.template_dir.exists():
            return []
        return sorted(path.stem for path in self.template_dir.glob("*.jinja2"))
