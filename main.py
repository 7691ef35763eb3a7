import signal
import sys
import threading
from pathlib import Path

from settings import ENGINE_NAME
from engine.config import EngineConfig
from engine.error_handler import configure_logging, get_logger
from engine.faction_engine import FactionEngine
from telemetry.logger import TelemetryLogger

ROOT = Path(__file__).resolve().parent
CONFIG_FILE = ROOT / "config" / "factions.json"
LOG_DIR = ROOT / "logs"


def main() -> None:
    configure_logging(LOG_DIR)
    log = get_logger("main")

    config = EngineConfig()
    if not config.load(CONFIG_FILE):
        # First run: write the defaults so they can be edited.
        config.save(CONFIG_FILE)
    config.validate()

    engine = FactionEngine(config=config)
    engine.load()

    telemetry = TelemetryLogger()
    telemetry.init(LOG_DIR / "telemetry.jsonl")
    telemetry.attach(engine.events)

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    signal.signal(signal.SIGTERM, lambda *_: stop.set())

    engine.start()
    log.info(f"{ENGINE_NAME} running with {engine.registry.faction_count()} factions")

    # --- Main loop ---
    while not stop.wait(1.0):
        pass

    engine.shutdown()
    sys.exit()


if __name__ == "__main__":
    main()
