from __future__ import annotations
import signal
import sys
from .cli.argument_parser import parse_args_with_config
from .orchestrator.orchestrator import Orchestrator
from .core.exceptions import Snap2NbdError, OperationCancelled, format_exception_for_cli


def main() -> None:
    args, conf, logger = parse_args_with_config()
    try:
        orch = Orchestrator(logger, args, conf)
        signal.signal(signal.SIGTERM, lambda _sig, _frm: orch.cancel())
        rc = orch.run()
    except OperationCancelled as e:
        logger.warning(format_exception_for_cli(e, verbose=args.verbose))
        rc = e.code
    except Snap2NbdError as e:
        logger.error(format_exception_for_cli(e, verbose=args.verbose))
        rc = e.code
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        rc = 130
    sys.exit(int(rc))


if __name__ == "__main__":
    main()
