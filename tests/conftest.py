import os
import sys


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.server.app without requiring an editable install. The tests directory
# itself is added for the shared fakes in fake_engines.py.
_TESTS_DIR = os.path.abspath(os.path.dirname(__file__))
_REPO_ROOT = os.path.abspath(os.path.join(_TESTS_DIR, ".."))
for _path in (_REPO_ROOT, _TESTS_DIR):
    if _path not in sys.path:
        sys.path.insert(0, _path)
