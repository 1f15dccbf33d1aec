#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[relay] mode={os.environ.get('RELAY_MODE', 'multi-tab')} | "
    f"host={os.environ.get('RELAY_HOST', '127.0.0.1')} | "
    f"port={os.environ.get('RELAY_PORT', '8777')}",
    file=sys.stderr,
)

from extension_relay.main import main  # noqa: E402

if __name__ == "__main__":
    main()
