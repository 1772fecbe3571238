from __future__ import annotations

from fleetsync.cli import main


if __name__ == "__main__":
    main()
