# Sphinx configuration for the p2ptrader API reference

project = "P2P Trader"
copyright = "2026, Trading System Team"
author = "Trading System Team"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
    "sphinx_rtd_theme",
]

exclude_patterns = ["_build"]

html_theme = "sphinx_rtd_theme"
html_theme_options = {
    "collapse_navigation": False,
    "navigation_depth": 3,
}

napoleon_google_docstring = True
napoleon_numpy_docstring = False

autodoc_member_order = "bysource"
autodoc_typehints = "description"
# optional driver, only present with the encryption extra
autodoc_mock_imports = ["sqlcipher3"]
