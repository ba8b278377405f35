"""
NR CSI Feedback Service - Main Entry Point
"""

import logging
import argparse
from .server import create_app

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point for the CSI feedback service"""
    parser = argparse.ArgumentParser(
        description="5G NR CSI feedback (PMI/RI/CQI) service"
    )
    parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Host to bind to (default: 0.0.0.0)"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=5001,
        help="Port to bind to (default: 5001)"
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode"
    )
    parser.add_argument(
        "--n-size-grid",
        type=int,
        default=52,
        help="Carrier bandwidth in resource blocks (default: 52)"
    )
    parser.add_argument(
        "--subcarrier-spacing",
        type=int,
        default=15,
        help="Subcarrier spacing in kHz (default: 15)"
    )
    parser.add_argument(
        "--sinr-table",
        default="default",
        help="SINR to CQI lookup table name (default: default)"
    )

    args = parser.parse_args()

    config = {
        "carrier": {
            "n_size_grid": args.n_size_grid,
            "subcarrier_spacing": args.subcarrier_spacing,
        },
        "sinr_table": args.sinr_table,
    }

    logger.info(f"Starting NR CSI feedback service on {args.host}:{args.port}")
    logger.info(f"Carrier: {args.n_size_grid} RBs at {args.subcarrier_spacing} kHz")

    app = create_app(config)
    app.run(host=args.host, port=args.port, debug=args.debug)


if __name__ == "__main__":
    main()
