#!/usr/bin/env python3

"""Run external-route53 straight from a checkout.

The package lives under `src/external_route53`; this script puts `src` on
sys.path so `./external-route53.py` works without installing it.
"""

import sys
from pathlib import Path


sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from external_route53.cli import main  # noqa: E402


if __name__ == "__main__":
    main()
