# Configuration file for Sphinx documentation builder
import os
import sys

# Import perp_trading from the checkout without installing it
sys.path.insert(0, os.path.abspath(".."))

project = "Perp Trading"
copyright = "2026, Trading System Team"
author = "Trading System Team"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.intersphinx",
    "sphinx.ext.viewcode",
    "sphinx.ext.napoleon",
    "sphinx_rtd_theme",
]

templates_path = ["_templates"]
exclude_patterns = ["_build", "Thumbs.db", ".DS_Store"]

html_theme = "sphinx_rtd_theme"
html_theme_options = {
    "display_version": True,
    "prev_next_buttons_location": "bottom",
    "style_external_links": False,
}

# Engines and the coordinator document their Args/Returns in Google style
napoleon_google_docstring = True
napoleon_numpy_docstring = False
napoleon_include_private_names = False
napoleon_include_special_members = False

autodoc_member_order = "bysource"
autodoc_typehints = "description"
autodoc_default_options = {
    "members": True,
    "undoc-members": False,
    "show-inheritance": True,
}
# Network clients are documented without their transports installed
autodoc_mock_imports = ["aiohttp", "requests", "urllib3"]

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "pydantic": ("https://docs.pydantic.dev/latest", None),
}
