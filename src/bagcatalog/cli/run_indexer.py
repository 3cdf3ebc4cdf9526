"""Core bag indexer execution logic.

This module contains the actual indexer runner, separated from argument parsing.
Scripts are thin wrappers; this is the real implementation.
"""

import json
import shutil
import logging
import argparse
import importlib.util
from pathlib import Path
from typing import Optional, Dict, Any

from bagcatalog.setup_directories import setup_output_directories
from bagcatalog.pipeline.orchestrator import IndexingOrchestrator
from bagcatalog.schemas import resolve_config, ParamConfig, UserConfig, CLIConfig


logger = logging.getLogger(__name__)


def load_user_config_dict(config_path: str) -> dict:
    """Load user config dict from Python file.

    Returns the raw dict before Pydantic validation.

    Parameters
    ----------
    config_path : str
        Path to user config Python file containing CONFIG dict.

    Returns
    -------
    dict
        Raw user configuration dictionary.

    Raises
    ------
    FileNotFoundError
        If config file does not exist.
    ValueError
        If no CONFIG dict found in file.
    """
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")

    spec = importlib.util.spec_from_file_location("config_module", path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)

    # Find CONFIG dict
    for name in dir(module):
        if name.startswith('CONFIG'):
            obj = getattr(module, name)
            if isinstance(obj, dict):
                return obj

    raise ValueError(f"No CONFIG dict found in {path}")


def build_config(user_config_path: Optional[str] = None,
                 cli_args: Optional[Dict[str, Any]] = None,
                 verbose: bool = False):
    """Resolve Param < User < CLI into an InternalConfig.

    Parameters
    ----------
    user_config_path : str, optional
        Python file with a CONFIG dict. Expert defaults only when omitted.
    cli_args : dict, optional
        CLI overrides; None values are ignored.
    verbose : bool
        Force DEBUG logging.
    """
    param_cfg = ParamConfig()  # Expert defaults

    user_cfg_dict = load_user_config_dict(user_config_path) if user_config_path else {}
    user_cfg = UserConfig.model_validate(user_cfg_dict)

    cli_args = dict(cli_args or {})
    if verbose and cli_args.get("log_level") is None:
        cli_args["log_level"] = "DEBUG"

    # Filter None values
    cli_dict = {k: v for k, v in cli_args.items() if v is not None}
    cli_cfg = CLIConfig.model_validate(cli_dict) if cli_dict else CLIConfig()

    return resolve_config(param_cfg, user_cfg, cli_cfg)


def run_indexer(
    user_config_path: Optional[str] = None,
    cli_args: Optional[Dict[str, Any]] = None,
    max_runtime: Optional[int] = None,
    rerun: bool = False,
    verbose: bool = False
) -> IndexingOrchestrator:
    """Execute the bag indexer.

    This is the core execution function. It:
    1. Loads and resolves configuration (Param < User < CLI)
    2. Optionally cleans the output directory if rerun=True
    3. Sets up output directories
    4. Instantiates and starts the indexing orchestrator
    5. Blocks until completion or interruption

    Parameters
    ----------
    user_config_path : str, optional
        Path to user config file (Python file with CONFIG dict).

    cli_args : dict, optional
        CLI argument overrides. Keys: mode, roots, base_dir, workers,
        poll_interval_sec, log_level. All optional.

    max_runtime : int, optional
        Maximum runtime in minutes (watch mode only).
        If None, runs until KeyboardInterrupt.

    rerun : bool, optional
        If True, delete the output directory (catalog included) before running.

    verbose : bool, optional
        If True, enable DEBUG logging and print full resolved config.

    Returns
    -------
    IndexingOrchestrator
        The stopped orchestrator, with ``results`` of this run.

    Raises
    ------
    FileNotFoundError
        If user_config_path does not exist.
    ValueError
        If configuration validation fails or no scan root is configured.

    Examples
    --------
    Index two directories once::

        run_indexer(cli_args={"roots": ["/data/bags", "/mnt/field"]})

    Watch with a user config::

        run_indexer("config/my_config.py", cli_args={"mode": "watch"}, max_runtime=60)
    """
    config = build_config(user_config_path, cli_args, verbose)

    if not config.scanner.roots:
        raise ValueError("No scan roots configured (ROOTS in the user config or --root)")

    # Clean output directories if --rerun specified
    if rerun:
        base_dir_path = Path(config.base_dir)
        if base_dir_path.exists():
            print(f"Cleaning output directory: {base_dir_path}")
            shutil.rmtree(base_dir_path)
            print("Output directory cleaned")

    output_dirs = setup_output_directories(config.base_dir)

    # Print summary
    print(f"\n{'='*60}")
    print("Bag Catalog Indexer")
    print('='*60)
    print(f"Config:  {user_config_path or '(defaults)'}")
    print(f"Roots:   {', '.join(config.scanner.roots)}")
    print(f"Mode:    {config.mode}")
    print(f"Workers: {config.ingestion.max_concurrent_ingestions}")
    print(f"Output:  {config.base_dir}")
    print('='*60)

    if verbose:
        print("\nFull Internal Configuration:")
        print(json.dumps(config.model_dump(), indent=2))
        print('='*60)

    orchestrator = IndexingOrchestrator(config, output_dirs=output_dirs)
    orchestrator.start(max_runtime=max_runtime)
    return orchestrator


def main(argv=None):
    parser = argparse.ArgumentParser(description="Catalog ROS bag files into a searchable index")
    parser.add_argument("config", nargs="?", help="Path to user config file")
    parser.add_argument("--root", dest="roots", action="append", help="Directory to scan (repeatable)")
    parser.add_argument("--mode", choices=["once", "watch"], help="Override mode")
    parser.add_argument("--base-dir", help="Output directory")
    parser.add_argument("--workers", type=int, help="Concurrent ingestions")
    parser.add_argument("--poll-interval", type=int, help="Seconds between scans (implies watch)")
    parser.add_argument("--max-runtime", type=int, help="Max runtime in minutes (watch)")
    parser.add_argument("--rerun", action="store_true", help="Delete output directory before running")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    orchestrator = run_indexer(
        args.config,
        cli_args={
            "mode": args.mode,
            "roots": args.roots,
            "base_dir": args.base_dir,
            "workers": args.workers,
            "poll_interval_sec": args.poll_interval,
        },
        max_runtime=args.max_runtime,
        rerun=args.rerun,
        verbose=args.verbose,
    )
    failed = [r for r in orchestrator.results if r.status == "failed"]
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
