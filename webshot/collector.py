"""
Webshot Command Line Collector.

Loads endpoints from a host list, Nessus report or nmap XML file, captures a
screenshot of each one and writes an HTML report that links them together.

Usage:
    $ webshot -f hosts.txt --threads 8 --report out/report.html
    $ webshot -f scan.nessus --timeout 10 --format png

Exit Codes:
    0: The report was written, whatever the per-endpoint outcomes
    1: Invalid options, unreadable input, or the report could not be written

Functions:
    setup_logging: Configure console logging
    build_parser: Build the argument parser
    main: Run one capture batch from parsed arguments
    cli: Console script entry point
"""

import argparse
import logging
import sys
from typing import List, Optional

from webshot import endpoint_source
from webshot.capture_scan import CaptureBatch, WebshotTool
from webshot.data_model import (CaptureConfig, ConfigurationError,
                                EndpointSourceError, image_formats)


def setup_logging(debug: bool = False) -> None:
    """
    Configure the root logger for console output.

    Args:
        debug (bool): Log at DEBUG level instead of INFO

    Note:
        - Sets urllib3 logging to WARNING level to reduce HTTP request noise
        - Uses the same timestamp format as the rest of the tooling
    """
    log_level = logging.DEBUG if debug else logging.INFO
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    date_format = '%Y-%m-%d_%H:%M:%S'

    logging.basicConfig(level=log_level, format=log_format,
                        datefmt=date_format)
    # Reduce urllib3 verbosity to minimize HTTP request noise
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Webshot - screenshot every web endpoint in a host list, Nessus or nmap file",
        epilog="Certificate errors are ignored; every endpoint gets an entry in the report"
    )
    parser.add_argument(
        "-f", "--file",
        help="Host list, .nessus or nmap XML file with the endpoints to capture",
        required=True,
        type=str
    )
    parser.add_argument(
        "--threads",
        help="Maximum number of endpoints captured at once (default 1)",
        default=1,
        type=int
    )
    parser.add_argument(
        "--timeout",
        help="Seconds to wait for an HTTP response (default 30)",
        default=30,
        type=int
    )
    parser.add_argument(
        "--render-timeout", dest='render_timeout',
        help="Seconds to wait for a page to render (default 60)",
        default=60,
        type=int
    )
    parser.add_argument(
        "--width",
        help="Screenshot width in pixels (default 1920)",
        default=1920,
        type=int
    )
    parser.add_argument(
        "--height",
        help="Screenshot height in pixels (default 1080)",
        default=1080,
        type=int
    )
    parser.add_argument(
        "--format", dest='image_format',
        help="Screenshot image format (default jpeg)",
        choices=image_formats,
        default='jpeg'
    )
    parser.add_argument(
        "--quality",
        help="JPEG quality from 1 to 100 (default 80)",
        default=80,
        type=int
    )
    parser.add_argument(
        "--report",
        help="Path of the HTML report; screenshots are written beside it (default webshot_report.html)",
        default='webshot_report.html',
        type=str
    )
    parser.add_argument(
        "--prependhttps",
        help="Capture both http:// and https:// for host list entries without a scheme",
        action='store_true'
    )
    parser.add_argument(
        "--appendports",
        help="Append every port in the port list to host list entries without a port",
        action='store_true'
    )
    parser.add_argument(
        "--portlist",
        help="Port list file used with --appendports (default PortList.txt)",
        default='PortList.txt',
        type=str
    )
    parser.add_argument(
        "--debug",
        help="Enable debug logging",
        action='store_true'
    )
    return parser


def main(args) -> int:
    """
    Run one capture batch from parsed command-line arguments.

    Args:
        args (argparse.Namespace): Parsed arguments from build_parser()

    Returns:
        int: Process exit status
    """
    try:
        config = CaptureConfig(threads=args.threads,
                               timeout=args.timeout,
                               render_timeout=args.render_timeout,
                               width=args.width,
                               height=args.height,
                               image_format=args.image_format,
                               quality=args.quality,
                               report_path=args.report)
    except ConfigurationError as e:
        print("[-] %s" % e)
        return 1

    try:
        endpoints = endpoint_source.load_endpoints(args.file,
                                                   prepend_https=args.prependhttps,
                                                   append_ports=args.appendports,
                                                   port_list_path=args.portlist)
    except EndpointSourceError as e:
        print("[-] %s" % e)
        return 1

    for endpoint in endpoints:
        print(endpoint)

    if not endpoints:
        print("[-] No endpoints found in %s" % args.file)
        return 1

    batch = CaptureBatch(endpoints, config)
    webshot_tool = WebshotTool()
    if not webshot_tool.scan_func(batch):
        if batch.error is not None:
            print("[-] %s" % batch.error)
        else:
            print("[-] Capture failed, see the log for details")
        return 1

    print("[*] %s" % batch.summary)
    print("[*] Report written to %s" % config.report_path)
    return 0


def cli(argv: Optional[List[str]] = None) -> None:
    """Console script entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.debug)
    sys.exit(main(args))


if __name__ == "__main__":
    cli()
