from __future__ import annotations

from daproof.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
