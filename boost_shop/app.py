from __future__ import annotations

from boost_shop.config import load_config
from boost_shop.logging import configure_logging
from services.bot import run_bot


def main() -> None:
    config = load_config()
    configure_logging(config)
    run_bot()


if __name__ == "__main__":
    main()
