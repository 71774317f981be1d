"""Test configuration that makes ``coffee_ledger`` importable from a checkout."""

import os
import sys

# Put the repository root on ``sys.path`` so the suite runs against the
# working tree without an editable install.
ROOT_DIR = os.path.abspath(os.path.dirname(__file__))
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)
