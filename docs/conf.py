# Configuration file for the Sphinx documentation builder.
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import sys
import tomllib
from pathlib import Path

# Add the project root to the path so Sphinx can find the storegate package
sys.path.insert(0, str(Path(__file__).parent.parent))

# -- Project information -----------------------------------------------------

project = "storegate"
copyright = "2026, storegate contributors"
author = "storegate contributors"

# Read version from pyproject.toml (single source of truth)
_pyproject = Path(__file__).parent.parent / "pyproject.toml"
with open(_pyproject, "rb") as f:
    _data = tomllib.load(f)
release = _data["project"]["version"]
version = release

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",  # Auto-generate documentation from docstrings
    "sphinx.ext.napoleon",  # numpy-style Parameters / Raises sections
    "sphinx.ext.viewcode",  # Add links to highlighted source code
    "sphinx.ext.intersphinx",  # Link to Python and httpx documentation
    "sphinx_autodoc_typehints",  # Better type hint rendering
    "myst_parser",  # Markdown support
]

# Source file suffixes
source_suffix = {
    ".rst": "restructuredtext",
    ".md": "markdown",
}

exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]
master_doc = "index"

# -- MyST-Parser configuration -----------------------------------------------

myst_enable_extensions = [
    "colon_fence",  # ::: admonition syntax
    "deflist",  # definition lists
    "fieldlist",  # field lists
]
myst_heading_anchors = 3

# -- HTML output options -----------------------------------------------------

# Furo theme with a teal accent and monospace code fonts.
# Provides native light/dark toggle and clean, readable typography.
html_theme = "furo"

html_theme_options = {
    # Light mode: deep teal accent
    "light_css_variables": {
        "color-brand-primary": "#0b6e99",
        "color-brand-content": "#0b6e99",
        "font-stack--monospace": '"JetBrains Mono", "Fira Code", "Consolas", monospace',
    },
    # Dark mode: sky accent on dark surface
    "dark_css_variables": {
        "color-brand-primary": "#38bdf8",
        "color-brand-content": "#38bdf8",
        "font-stack--monospace": '"JetBrains Mono", "Fira Code", "Consolas", monospace',
    },
    "navigation_with_keys": True,
}

# -- Autodoc configuration ---------------------------------------------------

autodoc_default_options = {
    "members": True,
    "member-order": "bysource",
    "undoc-members": True,
    "exclude-members": "__weakref__",
}

autodoc_typehints = "description"
autodoc_typehints_description_target = "documented"

# -- Napoleon settings -------------------------------------------------------

napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_use_param = True
napoleon_use_rtype = True
napoleon_attr_annotations = True

# -- Intersphinx configuration -----------------------------------------------

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "httpx": ("https://www.python-httpx.org", None),
}
