import os
import re
import sys


tuschunks_path = os.path.join(os.path.dirname(__file__), '../..')
tuschunks_path = os.path.abspath(tuschunks_path)
sys.path.insert(0, tuschunks_path)


def get_version():
    """Return package version from the setup script (hacky)."""

    try:
        filename = os.path.join(tuschunks_path, 'setup.py')
        with open(filename, 'r') as fd:
            setup_py = fd.read()

        m = re.search(r'version\s*=\s*"(\d+\.\d+\.\d+)"', setup_py)
        return m.group(1)
    except (OSError, AttributeError):
        sys.exit('Unable to get package version from the setup script.')


project = 'tuschunks'
copyright = '2026, tuschunks developers'
author = 'tuschunks developers'
release = get_version()

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.intersphinx',
    'sphinx.ext.viewcode',
    'sphinx_autodoc_typehints',
]

intersphinx_mapping = {
    'python': ('https://docs.python.org/3/', None),
    'aiohttp': ('https://aiohttp.readthedocs.io/en/stable/', None),
    'tenacity': ('https://tenacity.readthedocs.io/en/latest/', None),
    'yarl': ('https://yarl.readthedocs.io/en/stable/', None),
}

exclude_patterns = []
html_theme = 'alabaster'
html_theme_options = {
    'description': 'Chunked, resumable tus uploads for asyncio.',
    'sidebar_collapse': False,
    'page_width': '80%',
    'body_max_width': '80%',
}
