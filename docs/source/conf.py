"""Sphinx configuration for the bcflash-jax documentation."""

import os
import sys

sys.path.insert(0, os.path.abspath("../.."))

project = "bcflash-jax"
author = "bcflash-jax developers"

# The API page is generated from Google-style docstrings; the pages are
# Markdown.
extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "myst_parser",
]
source_suffix = {".md": "markdown"}
master_doc = "index"

napoleon_google_docstring = True
napoleon_numpy_docstring = False
autodoc_member_order = "bysource"
autodoc_default_options = {"members": True}

html_theme = "furo"
