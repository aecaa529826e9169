"""Manifest rendering from structured blueprints."""

from vllm_eks.render.blueprints import BLUEPRINTS, Blueprint, set_path
from vllm_eks.render.renderer import Templater, find_placeholders

__all__ = [
    "BLUEPRINTS",
    "Blueprint",
    "Templater",
    "find_placeholders",
    "set_path",
]
