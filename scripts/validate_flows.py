#!/usr/bin/env python3
"""
Flow Validation — Check every flow document before it is deployed.

Usage:
    # Validate the configured flows directory:
    python scripts/validate_flows.py

    # Validate another directory:
    python scripts/validate_flows.py --dir path/to/flows

    # Also print each flow's steps:
    python scripts/validate_flows.py --verbose

Exits with status 1 if any flow is invalid; nothing is registered then.
"""
import argparse
import os
import sys

# Ensure app root is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def run_validation(directory: str = None, verbose: bool = False) -> int:
    from config.settings import load_settings
    from flows.registry import FlowRegistry
    from models.errors import FlowConfigurationError

    directory = directory or load_settings().flows_dir
    registry = FlowRegistry()

    print(f"Validating flows in {directory}")
    try:
        flows = registry.load_directory(directory)
    except FlowConfigurationError as e:
        print(f"Flow '{e.flow_id}' is INVALID:")
        for error in e.errors:
            print(f"  - {error}")
        return 1

    if not flows:
        print("No flow documents found.")
        return 1

    for flow in flows:
        meta = registry.metadata(flow.id)
        print(f"  {flow.id} v{flow.version}: {len(flow.steps)} steps, "
              f"start={flow.start_step}, languages={meta.get('supported_languages') or 'any'}")
        unreachable = registry.unreachable_steps(flow)
        if unreachable:
            print(f"    unreachable: {', '.join(unreachable)}")
        if verbose:
            for step in flow.steps.values():
                print(f"    - {step.id} [{step.kind}] -> {', '.join(step.transition_targets())}")

    print(f"{len(flows)} flow(s) valid. ✓")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Validate FlowGuard flow documents")
    parser.add_argument("--dir", help="Flows directory (default: settings flows_dir)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Print every step")
    args = parser.parse_args()
    sys.exit(run_validation(args.dir, args.verbose))


if __name__ == "__main__":
    main()
