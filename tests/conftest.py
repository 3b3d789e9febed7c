import os
import sys


def pytest_configure():
    # `src/` holds top-level packages (common, state, backup, restore)
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)
    # Shared fakes live next to the tests as `_fakes`
    unit_path = os.path.join(root, "tests", "unit")
    if unit_path not in sys.path:
        sys.path.insert(1, unit_path)
