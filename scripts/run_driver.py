#!/usr/bin/env python3
"""Run the stdio driver from a checkout, echoing the effective config to stderr."""

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from drivers.browser.config import MODE_ATTACHED, DriverConfig  # noqa: E402
from drivers.browser.main import main  # noqa: E402


def summary(config: DriverConfig) -> str:
    if config.mode == MODE_ATTACHED:
        engine = f"debug_address={config.debug_address}"
    else:
        engine = f"binary={config.binary_path or 'auto'} | auto_download={config.auto_download}"
    return (
        f"[driver] mode={config.mode} | {engine} | headless={config.headless} | "
        f"max_sessions={config.max_sessions} | on_error={config.on_error} | "
        f"timeouts nav/capture/cmd={config.navigation_timeout:g}/{config.capture_timeout:g}/"
        f"{config.command_timeout:g}s | timeout_policy={config.timeout_policy}"
    )


if __name__ == "__main__":
    print(summary(DriverConfig.from_env()), file=sys.stderr)
    main()
