# Sphinx configuration for the timecourse-de API reference.
#
# Build with:  sphinx-build -b html docs docs/_build/html

import os
import sys

# autodoc imports the package from the source tree
sys.path.insert(0, os.path.abspath("../src"))

from timecourse_de import __version__  # noqa: E402

# -- Project information -----------------------------------------------------

project = "timecourse-de"
author = "timecourse-de developers"
release = __version__
version = ".".join(release.split(".")[:2])

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.autosummary",
    "sphinx.ext.napoleon",
    "sphinx.ext.intersphinx",
    "sphinx.ext.mathjax",
]

exclude_patterns = ["_build"]

autodoc_default_options = {
    "members": True,
    "show-inheritance": True,
    "member-order": "bysource",
}
autodoc_typehints = "description"
autosummary_generate = True

# numpydoc-style sections throughout the package
napoleon_google_docstring = False
napoleon_numpy_docstring = True
napoleon_use_rtype = True
napoleon_attr_annotations = True

intersphinx_mapping = {
    "python": ("https://docs.python.org/3", None),
    "numpy": ("https://numpy.org/doc/stable/", None),
    "pandas": ("https://pandas.pydata.org/docs/", None),
    "scipy": ("https://docs.scipy.org/doc/scipy/", None),
    "statsmodels": ("https://www.statsmodels.org/stable/", None),
    "matplotlib": ("https://matplotlib.org/stable/", None),
    "biopython": ("https://biopython.org/docs/latest/", None),
}

# -- HTML output -------------------------------------------------------------

html_theme = "alabaster"
html_theme_options = {
    "description": "Negative binomial differential expression for stimulus time courses",
}
