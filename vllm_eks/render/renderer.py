"""Manifest Templater: ``render(blueprint, identifiers) -> manifest text``.

Manifests are built as structured documents and serialised with PyYAML, so
no identifier is ever spliced into text.  File-backed blueprints read their
base document from the working directory and overwrite the identifier
fields at fixed key paths.

Rendering is pure: the same blueprint and identifiers always produce the
same text, and nothing is written to disk.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from vllm_eks.config.models import DeploymentTarget
from vllm_eks.errors import InvalidTemplate, MissingIdentifier, MissingTemplateFiles
from vllm_eks.render.blueprints import BLUEPRINTS, Blueprint, Documents

logger = logging.getLogger(__name__)

#: Literal placeholders such as ``<fs-id>`` left in a template file.
PLACEHOLDER_RE = re.compile(r"<[A-Za-z][A-Za-z0-9_.-]*>")


def find_placeholders(text: str) -> List[str]:
    """Return the distinct ``<placeholder>`` literals in *text*, sorted."""
    return sorted(set(PLACEHOLDER_RE.findall(text)))


class Templater:
    """Renders named blueprints for one deployment target.

    Args:
        target: Deployment whose names, sizes and model settings go into
            every manifest.
        workdir: Directory holding the file-backed templates.
        blueprints: Catalogue override (tests).
    """

    def __init__(
        self,
        target: DeploymentTarget,
        workdir: str | Path = ".",
        *,
        blueprints: Optional[Mapping[str, Blueprint]] = None,
    ) -> None:
        self.target = target
        self.workdir = Path(workdir)
        self.blueprints: Mapping[str, Blueprint] = blueprints or BLUEPRINTS

    def blueprint(self, name: str) -> Blueprint:
        try:
            return self.blueprints[name]
        except KeyError:
            raise ValueError(
                f"Unknown blueprint '{name}' (known: {', '.join(sorted(self.blueprints))})"
            ) from None

    def _load_base(self, bp: Blueprint) -> Documents:
        if not bp.source_file:
            return []
        path = self.workdir / bp.source_file
        if not path.is_file():
            raise MissingTemplateFiles([bp.source_file], str(self.workdir))
        with open(path, encoding="utf-8") as fh:
            try:
                docs = [d for d in yaml.safe_load_all(fh) if d is not None]
            except yaml.YAMLError as exc:
                raise InvalidTemplate(str(path), f"not valid YAML ({exc})") from exc
        return docs

    def render_documents(self, name: str, identifiers: Mapping[str, Any]) -> Documents:
        """Build the manifest documents for *name*.

        Raises:
            MissingIdentifier: If a slot is unbound or empty, or if a
                placeholder literal survives into the output.
        """
        bp = self.blueprint(name)
        missing = [slot for slot in bp.slots if not identifiers.get(slot)]
        if missing:
            raise MissingIdentifier(name, missing)

        ids: Dict[str, str] = {k: str(v) for k, v in identifiers.items() if v}
        return bp.build(self.target, ids, self._load_base(bp))

    def render(self, name: str, identifiers: Mapping[str, Any]) -> str:
        """Return the manifest text for *name* (multi-document YAML)."""
        docs = self.render_documents(name, identifiers)
        text = yaml.safe_dump_all(docs, sort_keys=False, default_flow_style=False)
        leftovers = find_placeholders(text)
        if leftovers:
            raise MissingIdentifier(name, leftovers)
        logger.debug("Rendered blueprint %s (%d document(s))", name, len(docs))
        return text
