"""
Pytest configuration for the stackvm tests.
"""

import sys
from pathlib import Path

# The modules live flat at the repository root.
repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))
