# src/daproof/cli.py
from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, List, Optional

from daproof.config import load_config
from daproof.env import load_dotenv_if_present
from daproof.structured_logging import configure_structured_logging

USAGE = (
    "daproof-verifier --node=<rpcUrl> [--environment=ENV] [--deployment=DEPLOYMENT] "
    "[--concurrency=N] [--resync=true|false] [--check=<submissionId>]"
)


def _bool_arg(v: str) -> bool:
    s = str(v).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    raise argparse.ArgumentTypeError(f"expected true|false, got {v!r}")


def _build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="daproof-verifier",
        usage=USAGE,
        description="Verify data availability submissions against historical chain state.",
    )
    ap.add_argument("--node", dest="node_url", default=None, help="JSON-RPC URL of the chain node (required)")
    ap.add_argument("--environment", dest="environment", default=None, help="POLYGON | MUMBAI | SANDBOX")
    ap.add_argument("--deployment", dest="deployment", default=None, help="PRODUCTION | STAGING | LOCAL")
    ap.add_argument("--concurrency", dest="concurrency", type=int, default=None)
    ap.add_argument("--resync", dest="resync", type=_bool_arg, default=None)
    ap.add_argument("--config", dest="config_path", default=None, help="JSON or YAML config file")
    ap.add_argument("--data-dir", dest="data_dir", default=None)
    ap.add_argument("--api-port", dest="api_port", type=int, default=None, help="status API port (0 disables)")
    ap.add_argument("--log-level", dest="log_level", default=None)
    ap.add_argument("--check", dest="check_id", default=None, help="verify one submission by id, print the result and exit")
    return ap


def _parse_args(argv: List[str]) -> argparse.Namespace:
    return _build_parser().parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv_if_present()

    args = _parse_args(sys.argv[1:] if argv is None else list(argv))
    overrides: Dict[str, Any] = {
        "node_url": args.node_url,
        "environment": args.environment,
        "deployment": args.deployment,
        "concurrency": args.concurrency,
        "resync": args.resync,
        "data_dir": args.data_dir,
        "api_port": args.api_port,
        "log_level": args.log_level,
    }

    try:
        cfg = load_config(config_path=args.config_path, overrides=overrides)
    except (ValueError, OSError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        print(f"usage: {USAGE}", file=sys.stderr)
        return 2

    configure_structured_logging(cfg.log_level)

    # Import after config so a usage error never pays for the runtime imports.
    from daproof.runtime.node import VerifierNode

    node = VerifierNode(cfg)
    if args.check_id is not None:
        return _check_once(node, args.check_id)
    node.run_forever()
    return 0


def _check_once(node: Any, submission_id: str) -> int:
    """0 when VALID, 1 when INVALID or still transient, 3 when it cannot be fetched."""
    from daproof.errors import InvariantError, TransientError
    from daproof.models.result import Outcome

    try:
        result = node.check_submission(submission_id)
    except (LookupError, InvariantError, TransientError) as e:
        print(f"ERROR: cannot check {submission_id!r}: {e}", file=sys.stderr)
        return 3
    print(json.dumps(result.to_json(), sort_keys=True))
    return 0 if result.outcome == Outcome.VALID else 1


if __name__ == "__main__":
    raise SystemExit(main())
