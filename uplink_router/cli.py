import argparse
import signal
from pathlib import Path

from .service import ControlPlane
from .settings import CONFIG_PATH, SETUP_PATH, ConfigStore, configure_logging, load_setup


def parse_args(argv=None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Bonded uplink control plane")
    ap.add_argument("--config", default=str(CONFIG_PATH), help="Path to config.json")
    ap.add_argument("--setup", default=str(SETUP_PATH), help="Path to setup.json")
    ap.add_argument("--verbose", action="store_true", help="Debug logging")
    return ap.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    setup = load_setup(Path(args.setup).resolve())
    logger = configure_logging(Path(setup["log_dir"]), verbose=args.verbose)
    config = ConfigStore(Path(args.config).resolve())

    plane = ControlPlane(setup, config)

    def _stop(signum, _frame):
        logger.info("Received signal %s", signum)
        plane.stop_event.set()

    signal.signal(signal.SIGTERM, _stop)
    signal.signal(signal.SIGINT, _stop)

    plane.start()
    try:
        while not plane.stop_event.wait(0.25):
            pass
    except KeyboardInterrupt:
        pass
    plane.shutdown()


if __name__ == "__main__":
    main()
