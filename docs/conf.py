from __future__ import annotations

from importlib.metadata import version as _distribution_version

__version__ = _distribution_version("transcript-pipeline")

project = "Transcript Pipeline"
author = "Transcript Pipeline contributors"
release = __version__
version = ".".join(__version__.split(".")[:2])

extensions = ["myst_parser", "sphinx.ext.autodoc"]
source_suffix = {".md": "markdown"}
root_doc = "index"
exclude_patterns = ["_build"]

autodoc_member_order = "bysource"
autodoc_typehints = "description"

html_theme = "furo"
html_title = f"Transcript Pipeline {release}"

myst_enable_extensions = ["colon_fence", "deflist"]
myst_heading_anchors = 3
