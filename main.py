"""
CLI entry point for the portfolio metrics engine.
"""

import sys
import json
import logging
import argparse
from typing import Any, Dict, List, Optional

from config import Config
from exceptions import InsufficientDataError, ValidationError
from orchestrator import MetricsCalculationService

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def setup_cli() -> argparse.ArgumentParser:
    """
    Sets up the command-line interface.

    Returns:
        argparse.ArgumentParser: The argument parser.
    """
    parser = argparse.ArgumentParser(
        description="Portfolio risk/return metrics with optional AI analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Equal-weighted two stock portfolio over the last year
  %(prog)s --tickers AAPL,MSFT --weights 0.5,0.5

  # Explicit range and benchmark, with calculation traces
  %(prog)s --tickers AAPL,MSFT,GOOGL --weights 0.4,0.3,0.3 --start 2024-01-01 --end 2024-12-31 --benchmark QQQ --traces

  # Raw JSON response, no AI analysis
  %(prog)s --tickers VTI,BND --weights 0.6,0.4 --no-ai --json
        """,
    )

    parser.add_argument(
        "--tickers", "-t", type=str, required=True,
        help='Comma-separated ticker symbols (e.g., "AAPL,MSFT")',
    )
    parser.add_argument(
        "--weights", "-w", type=str, required=True,
        help='Comma-separated portfolio weights summing to 1 (e.g., "0.6,0.4")',
    )
    parser.add_argument("--start", type=str, help="Start date YYYY-MM-DD (default: one year ago)")
    parser.add_argument("--end", type=str, help="End date YYYY-MM-DD (default: today)")
    parser.add_argument("--benchmark", "-b", type=str, help="Benchmark ticker (default: SPY)")
    parser.add_argument("--capital", type=float, help="Investable capital (default: 100000)")
    parser.add_argument(
        "--risk-free-rate", type=float, help="Annual risk-free rate as a decimal (default: 0.05)"
    )
    parser.add_argument("--traces", action="store_true", help="Include calculation traces")
    parser.add_argument("--no-ai", action="store_true", help="Skip the AI analysis")
    parser.add_argument("--json", action="store_true", help="Print the raw JSON response")
    parser.add_argument(
        "--invalidate", action="store_true",
        help="Invalidate the cached result for this portfolio and range before calculating",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")

    return parser


def parse_weights(weights_str: str) -> List[float]:
    """
    Parses comma-separated weights.

    Raises:
        ValueError: If any weight is not a number.
    """
    try:
        return [float(w.strip()) for w in weights_str.split(",")]
    except ValueError as e:
        raise ValueError(f"Invalid weights format: {e}") from e


def build_payload(args: argparse.Namespace) -> Dict[str, Any]:
    """Translate CLI arguments into a calculation request payload."""
    payload: Dict[str, Any] = {
        "tickers": [t.strip() for t in args.tickers.split(",") if t.strip()],
        "weights": parse_weights(args.weights),
        "includeAIAnalysis": not args.no_ai,
        "generateTraces": args.traces,
    }
    optional = {
        "startDate": args.start,
        "endDate": args.end,
        "benchmarkTicker": args.benchmark,
        "investableCapital": args.capital,
        "riskFreeRate": args.risk_free_rate,
    }
    payload.update({key: value for key, value in optional.items() if value is not None})
    return payload


def print_summary(payload: Dict[str, Any]) -> None:
    """Human-readable rendering of a successful response."""
    metrics = payload["metrics"]
    info = payload["dataInfo"]

    print("=" * 60)
    print("PORTFOLIO METRICS")
    print("=" * 60)
    print(f"Period: {info['startDate']} to {info['endDate']}")
    if info.get("tradingDays") is not None:
        print(f"Trading days: {info['tradingDays']} (benchmark: {info.get('benchmarkDays')})")
    print(f"From cache: {'yes' if payload['fromCache'] else 'no'}")

    print("\nReturns:")
    print(f"  Total Return: {metrics['totalReturn']:.2f}%")
    print(f"  CAGR: {metrics['cagr']:.2f}%")
    print(f"  Annualized Return: {metrics['annualizedReturn']:.2f}%")

    print("\nRisk:")
    print(f"  Volatility: {metrics['volatility']:.2f}%")
    print(f"  Max Drawdown: {metrics['maxDrawdown']:.2f}%")
    print(f"  VaR 95% / 99%: {metrics['var95']:.2f}% / {metrics['var99']:.2f}%")
    print(f"  CVaR 95% / 99%: {metrics['cvar95']:.2f}% / {metrics['cvar99']:.2f}%")

    print("\nRisk-adjusted:")
    print(f"  Sharpe: {metrics['sharpeRatio']:.2f}")
    print(f"  Sortino: {metrics['sortinoRatio']:.2f}")
    print(f"  Calmar: {metrics['calmarRatio']:.2f}")
    print(f"  Omega: {metrics['omegaRatio']:.2f}")

    print("\nBenchmark:")
    print(f"  Beta: {metrics['beta']:.2f}  Alpha: {metrics['alpha']:.2f}%  R²: {metrics['rSquared']:.2f}")
    print(f"  Tracking Error: {metrics['trackingError']:.2f}%  IR: {metrics['informationRatio']:.2f}")

    print("\nInvestor:")
    print(f"  Sleep Score: {metrics['sleepScore']:.0f}/100")
    print(f"  Turbulence: {metrics['turbulenceRating']:.0f}/100")
    print(f"  Worst Case Loss: ${metrics['worstCaseDollars']:,.2f}")

    analysis = payload.get("aiAnalysis")
    if analysis:
        print("\nAI Analysis:")
        if "error" in analysis:
            print(f"  Unavailable: {analysis['error']}")
        else:
            if analysis.get("riskLevel"):
                print(f"  Risk level: {analysis['riskLevel']}")
            if analysis.get("summary"):
                print(f"  {analysis['summary']}")
            if analysis.get("keyInsight"):
                print(f"  Key insight: {analysis['keyInsight']}")

    if payload.get("traces"):
        print(f"\nCalculation traces: {len(payload['traces'])} (use --json to view)")

    print("=" * 60)


def main(argv: Optional[List[str]] = None, service: Optional[MetricsCalculationService] = None) -> int:
    """Main entry point.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = setup_cli()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    owned = service is None
    try:
        payload = build_payload(args)

        if owned:
            service = MetricsCalculationService(Config.from_env())

        request = service.parse_request(payload)

        if args.invalidate and service.invalidate(request):
            print("Invalidated cached result\n")

        response = service.calculate(request).to_payload()

        if args.json:
            print(json.dumps(response, indent=2))
        else:
            print_summary(response)
        return 0

    except ValidationError as e:
        print(f"\n❌ Invalid request: {e}")
        return 1

    except InsufficientDataError as e:
        print(f"\n❌ {e}")
        return 1

    except KeyboardInterrupt:
        print("\n\n⚠️  Operation cancelled by user")
        return 1

    except Exception as e:  # Broad catch is intentional here - top-level error handler
        logger.error(f"Fatal error: {e}", exc_info=args.verbose)
        print(f"\n❌ Error: {e}")
        return 1

    finally:
        if owned and service is not None:
            service.close()


if __name__ == "__main__":
    sys.exit(main())
