#!/usr/bin/env python3
"""Generate a route safety preview from the command line.

Usage:
  python preview_cli.py --route route.json
  python preview_cli.py --route route.json --max-points 6 --json
  python preview_cli.py --route route.json --fallback
  python preview_cli.py --clear-cache

route.json is a JSON list of points, each {"latitude": .., "longitude": ..}
or a [lat, lng] pair.  Requires GOOGLE_MAPS_API_KEY (and
GOOGLE_CLOUD_VISION_API_KEY unless --fallback) in the environment or .env.
"""

import argparse
import json
import logging
import os
import sys

from dotenv import load_dotenv

load_dotenv()

from preview_config import (  # noqa: E402
    DEFAULT_MAX_POINTS,
    DEFAULT_SAMPLING_DISTANCE_M,
    DEFAULT_TIMEOUT_MS,
)
from route_preview import (  # noqa: E402
    PreviewError,
    ProgressEvent,
    RoutePreview,
    build_default_service,
)

logger = logging.getLogger(__name__)


def load_route(path: str) -> list:
    """Read a route file. Raises ValueError for anything that isn't a point list."""
    try:
        with open(path) as f:
            data = json.load(f)
    except OSError as e:
        raise ValueError(f"Cannot read route file {path}: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Route file {path} is not valid JSON: {e}") from e
    if isinstance(data, dict):
        data = data.get("coordinates")
    if not isinstance(data, list) or len(data) < 2:
        raise ValueError("Route file must contain a list of at least 2 points")
    return data


def format_preview(preview: RoutePreview) -> str:
    """Format a preview as a readable report"""
    stats = preview.statistics
    meta = preview.metadata
    lines = []

    lines.append("=" * 70)
    start, end = preview.route_coordinates[0], preview.route_coordinates[-1]
    lines.append(
        f"ROUTE: {start.latitude:.5f}, {start.longitude:.5f} -> "
        f"{end.latitude:.5f}, {end.longitude:.5f}"
    )
    lines.append(
        f"SAFETY: {stats.overall_safety_score:.1f}/10  {stats.grade}"
        + ("  (limited preview)" if meta.fallback_mode else "")
    )
    lines.append("=" * 70)

    if stats.breakdown:
        b = stats.breakdown
        lines.append("\nBREAKDOWN:")
        lines.append(f"  Lighting:        {b.lighting:.1f}")
        lines.append(f"  Sidewalks:       {b.sidewalk:.1f}")
        lines.append(f"  Activity:        {b.crowd_density:.1f}")
        lines.append(f"  Openness:        {b.isolation:.1f}")
        lines.append(f"  Surroundings:    {b.building_type:.1f}")

    if stats.positives:
        lines.append("\nPOSITIVES:")
        for positive in stats.positives:
            lines.append(f"  + {positive}")

    if stats.concerns:
        lines.append("\nCONCERNS:")
        for concern in stats.concerns:
            lines.append(f"  ! {concern.concern} ({concern.location})")

    if stats.problem_segments:
        lines.append("\nPROBLEM SEGMENTS:")
        for seg in stats.problem_segments:
            issues = "; ".join(seg.main_issues) or "low overall score"
            lines.append(f"  - {seg.distance}m: {seg.score:.1f} ({issues})")

    if stats.recommendations:
        lines.append("\nRECOMMENDATIONS:")
        for tip in stats.recommendations:
            lines.append(f"  * {tip}")

    lines.append(
        f"\n{meta.analyzed_points}/{meta.total_points} points, "
        f"sampled every {meta.sampling_distance:.0f}m, "
        f"{meta.generation_time_ms:,}ms"
    )
    return "\n".join(lines)


def _print_progress(event: ProgressEvent):
    if event.total:
        print(f"  {event.stage}: {event.current}/{event.total}", file=sys.stderr)
    else:
        print(f"  {event.stage}...", file=sys.stderr)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Preview the safety of a walking route from Street View imagery"
    )
    parser.add_argument(
        "--route",
        help="JSON file with the route's coordinates"
    )
    parser.add_argument(
        "--sampling-distance",
        type=float,
        default=DEFAULT_SAMPLING_DISTANCE_M,
        help="Meters between sample points (default %(default)s)"
    )
    parser.add_argument(
        "--max-points",
        type=int,
        default=DEFAULT_MAX_POINTS,
        help="Maximum points to analyze (default %(default)s)"
    )
    parser.add_argument(
        "--timeout-ms",
        type=int,
        default=DEFAULT_TIMEOUT_MS,
        help="Overall time budget in milliseconds (default %(default)s)"
    )
    parser.add_argument(
        "--fallback",
        action="store_true",
        help="Imagery-only preview, skip AI analysis"
    )
    parser.add_argument(
        "--clear-cache",
        action="store_true",
        help="Clear preview, Street View and analysis caches"
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output as JSON instead of formatted text"
    )

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.WARNING)

    service = build_default_service()

    if args.clear_cache:
        counts = service.clear_all_caches()
        if args.json:
            print(json.dumps({"cleared": counts}, indent=2))
        else:
            print(
                f"Cleared {counts['previews']} previews, {counts['street_view']} "
                f"Street View entries, {counts['analyses']} analyses"
            )
        if not args.route:
            return 0

    if not args.route:
        parser.print_help()
        return 1

    required = ["GOOGLE_MAPS_API_KEY"]
    if not args.fallback:
        required.append("GOOGLE_CLOUD_VISION_API_KEY")
    missing = [key for key in required if not os.environ.get(key)]
    if missing:
        print(f"Error: missing required environment variables: {', '.join(missing)}", file=sys.stderr)
        return 1

    try:
        coordinates = load_route(args.route)
        if args.fallback:
            preview = service.generate_fallback_preview(coordinates)
        else:
            preview = service.generate_preview(
                coordinates,
                sampling_distance=args.sampling_distance,
                max_points=args.max_points,
                timeout_ms=args.timeout_ms,
                on_progress=None if args.json else _print_progress,
            )
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except PreviewError as e:
        print(f"Error: {e}", file=sys.stderr)
        print("Try --fallback for an imagery-only preview.", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(preview.to_dict(), indent=2))
    else:
        print(format_preview(preview))
    return 0


if __name__ == "__main__":
    sys.exit(main())
