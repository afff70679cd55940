import argparse, logging, os, sys
import trio
from typing import List, Optional

from ._config import load_configuration_from_environment, load_configuration_from_file
from ._proxy import ForwardProxy

logger = logging.getLogger("forwardproxy")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="forwardproxy",
        description="Authenticating HTTP forward proxy. Without --config, settings come from "
                    "PORT, PROXY_USER, PROXY_PASS and WHITELIST_HOSTS in the environment.",
    )
    parser.add_argument("--config", metavar="FILE", help="TOML configuration file")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")

    try:
        if args.config:
            config = load_configuration_from_file(args.config)
        else:
            config = load_configuration_from_environment(os.environ)
    except (OSError, ValueError) as e:
        logger.error(f"Bad configuration: {e}")
        return 2

    logger.info(f"User: {config.username}")
    if config.allowed_hosts:
        logger.info(f"Allowed hosts: {', '.join(config.allowed_hosts)}")
    else:
        logger.warning("No allow-list - all hosts allowed (consider setting WHITELIST_HOSTS)")

    try:
        trio.run(ForwardProxy(config).listen)
    except KeyboardInterrupt:
        logger.info("KeyboardInterrupt - shutting down")
    return 0


if __name__ == "__main__":
    sys.exit(main())
