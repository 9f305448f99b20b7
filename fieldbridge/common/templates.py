"""
Template Catalog

Loads device templates from YAML or JSON files (one template per file,
or a list under a top-level `templates` key) and serves them by id.
"""

from pathlib import Path
from typing import Any, Iterable

import yaml

from .config import Template, load_template
from .exceptions import ConfigError
from .logging_setup import get_service_logger

logger = get_service_logger("config.templates")

TEMPLATE_SUFFIXES = (".yaml", ".yml", ".json")


class TemplateCatalog:
    """Read-only lookup of templates by id"""

    def __init__(self, templates: Iterable[Template] = ()):
        self._templates: dict[str, Template] = {}
        for template in templates:
            self.add(template)

    def add(self, template: Template) -> None:
        if template.id in self._templates:
            raise ConfigError(f"Duplicate template id '{template.id}'")
        self._templates[template.id] = template

    def get(self, template_id: str) -> Template:
        """Return the template or raise ConfigError if unknown."""
        try:
            return self._templates[template_id]
        except KeyError:
            raise ConfigError(f"Template '{template_id}' not found")

    def __contains__(self, template_id: str) -> bool:
        return template_id in self._templates

    def __len__(self) -> int:
        return len(self._templates)

    def ids(self) -> list[str]:
        return sorted(self._templates)


def _templates_from_document(document: Any, origin: str) -> list[dict]:
    if document is None:
        return []
    if isinstance(document, dict) and "templates" in document:
        document = document["templates"]
    if isinstance(document, dict):
        return [document]
    if isinstance(document, list):
        return document
    raise ConfigError(f"{origin}: expected a template mapping or list")


def load_template_catalog(path: str | Path) -> TemplateCatalog:
    """
    Load every template below `path` (a file or a directory).

    A broken template file is logged and skipped; the remaining templates
    are still served, and devices referencing the broken one fail to start
    with a "template not found" ConfigError.
    """
    root = Path(path)
    if root.is_file():
        files = [root]
    elif root.is_dir():
        files = sorted(p for p in root.rglob("*") if p.suffix.lower() in TEMPLATE_SUFFIXES)
    else:
        logger.warning(f"Template path not found: {root}")
        return TemplateCatalog()

    catalog = TemplateCatalog()
    for file_path in files:
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                # JSON is a subset of YAML
                document = yaml.safe_load(f)
            for data in _templates_from_document(document, str(file_path)):
                catalog.add(load_template(data))
        except (yaml.YAMLError, OSError) as e:
            logger.error(f"Failed to read template file {file_path}: {e}")
        except ConfigError as e:
            logger.error(f"Invalid template in {file_path}: {e.message}")

    logger.info(f"Loaded {len(catalog)} templates from {root}")
    return catalog
