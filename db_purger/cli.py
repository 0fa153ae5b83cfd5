import logging
import signal
import sys
import threading
import time
from typing import List, Optional

from .config import load_config, resolve_config_path
from .errors import ConfigurationInvalid
from .job import log_summary, run_purge
from .utils import setup_logging, format_duration


def install_stop_handlers(stop_event: threading.Event) -> None:
    """SIGINT/SIGTERM finish the current batch, then stop."""

    def _handler(signum, frame):
        logging.warning(f"[CANCEL] Received signal {signum}, stopping after the current batch")
        stop_event.set()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    try:
        cfg = load_config(resolve_config_path(argv))
    except ConfigurationInvalid as e:
        print(f"[ERROR] Invalid configuration: {e}", file=sys.stderr)
        return 1

    setup_logging(cfg.log_file, rotate=cfg.log_rotate, console=cfg.log_console)
    logging.info("[INFO] Starting database purge process..." + (" (dry run)" if cfg.options.dry_run else ""))

    stop_event = threading.Event()
    install_stop_handlers(stop_event)

    overall_start_time = time.time()
    summary = run_purge(cfg, stop_event=stop_event)
    log_summary(summary)
    logging.info(f"[TIMING] Total purge completed in {format_duration(time.time() - overall_start_time)}")

    return 0 if summary.succeeded(cfg.options.fail_on_table_error) else 1


if __name__ == "__main__":
    sys.exit(main())
