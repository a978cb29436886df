"""
clean-bucket - delete every key in one or more buckets.

Lists each bucket's keys through the streaming interface and deletes them
with a bounded number of concurrent workers. Keys that disappear on their
own are reported, not treated as failures.
"""

from __future__ import annotations

import argparse
import logging
import sys

from riakhttp.cleaner import BucketCleaner, CleanerConfig
from riakhttp.errors import ConfigurationError

# === Logging Configuration ===
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_arguments(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse command line arguments.

    Returns:
        Parsed arguments namespace.
    """
    parser = argparse.ArgumentParser(
        prog="clean-bucket",
        description="Delete every key in the named buckets",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s my-bucket                    Delete all keys in my-bucket
  %(prog)s -t 8 -v bucket-a bucket-b    Eight workers, one line per delete
  %(prog)s --url http://db1:8098/ b     Talk to another node

Environment Variables:
  RIAK_URL          Root URL of the store (default: http://localhost:8098/)
  RIAK_CLIENT_ID    Client id sent on writes (default: hostname.pid)
        """,
    )
    parser.add_argument("buckets", nargs="+", metavar="BUCKET", help="Bucket to empty")
    parser.add_argument(
        "--threads",
        "-t",
        type=int,
        default=1,
        help="Number of delete-threads (default: 1)",
    )
    parser.add_argument(
        "--verbose", "-v", action="store_true", help="Log every delete"
    )
    parser.add_argument("--url", type=str, help="Root URL of the store")
    parser.add_argument("--client-id", type=str, help="Client id sent on writes")
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Per-request timeout in seconds (default: 30)",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=0,
        help="Retries for transport failures and 503s (default: 0)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Empty the buckets named on the command line."""
    args = parse_arguments(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    config = CleanerConfig.from_environment()
    if args.url:
        config.root_url = args.url
    if args.client_id:
        config.client_id = args.client_id
    config.concurrency = args.threads
    config.verbose = args.verbose
    config.timeout = args.timeout
    config.max_retries = args.retries

    try:
        cleaner = BucketCleaner(config)
    except ConfigurationError as e:
        logger.error(str(e))
        return 2

    try:
        report = cleaner.delete_all(args.buckets)
    except KeyboardInterrupt:
        logger.warning("Operation interrupted by user")
        return 1

    if report.failed_buckets or report.failures:
        logger.error(
            f"{len(report.failures)} deletes failed, "
            f"{len(report.failed_buckets)} buckets could not be listed"
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
