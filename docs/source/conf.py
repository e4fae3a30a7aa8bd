# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

import os
import sys

# Document the package from the source tree (``python setup.py build_sphinx``).
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..')))

import solve_msivp  # noqa: E402

# -- Project information -----------------------------------------------------

project = 'solve_msivp'
copyright = '2025, David Riley'
author = 'David Riley'
version = solve_msivp.__version__
release = version

# -- General configuration ---------------------------------------------------

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.autosummary',
    'sphinx.ext.napoleon',  # NumPy-style docstrings
    'sphinx.ext.viewcode',
    'sphinx.ext.mathjax',
    'sphinx.ext.intersphinx',
]

root_doc = 'index'

autosummary_generate = True

# Source order keeps the setters and getters grouped as in integrator.py.
autodoc_default_options = {
    'members': True,
    'member-order': 'bysource',
    'undoc-members': False,
    'show-inheritance': True,
}
autodoc_typehints = 'description'

napoleon_google_docstring = False
napoleon_numpy_docstring = True

intersphinx_mapping = {
    'python': ('https://docs.python.org/3', None),
    'numpy': ('https://numpy.org/doc/stable/', None),
    'scipy': ('https://docs.scipy.org/doc/scipy/', None),
}

templates_path = ['_templates']
exclude_patterns = ['_build']

# -- Options for HTML output -------------------------------------------------

html_theme = 'alabaster'
html_title = f'solve_msivp {release}'

latex_engine = 'xelatex'
latex_documents = [
    (root_doc, 'solve_msivp.tex', 'solve_msivp: multistep IVP solver with sensitivities',
     author, 'manual'),
]
