from __future__ import annotations

import argparse
import json
import os
import sys
import threading
import tomllib
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from . import pipeline
from .backends import BACKENDS, make_backend_factory
from .errors import ConcatError, ParasynthError
from .pool import validate_workers

console = Console()


class UserCancelledError(RuntimeError):
    pass


DEFAULT_CONFIG: dict[str, Any] = {
    "global": {
        "display": "normal",
        "verbose": 2,
        "logging": 0,
        "logging_file": None,
        "logging_clear": False,
    },
    "synth": {
        "backend": "edge",
        "voice": None,
        "rate": "1",
        "parallel": 1,
        "convert": False,
        "store_dir": None,
        "work_dir": None,
        "link_mode": "auto",
        "retry_delay_seconds": 3,
        "max_attempts": None,
        "request_timeout_seconds": 60,
        "ffmpeg": None,
        "openai_model": "tts-1",
        "openai_format": "mp3",
        "no_sidecar": False,
    },
}


def _merge_config(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Two-level merge: sections in *overlay* update the matching section of *base*."""
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in base.items()}
    for section, values in overlay.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def _config_path() -> Path:
    override = os.getenv("PARASYNTH_CONFIG")
    return Path(override).expanduser() if override else Path.home() / ".config" / "parasynth" / "config.json"


def _read_config_file(path: Path) -> dict[str, Any]:
    raw = path.read_text(encoding="utf-8")
    data = tomllib.loads(raw) if path.suffix.lower() == ".toml" else json.loads(raw)
    if not isinstance(data, dict):
        return {}
    # A shared config file may nest our settings under a "parasynth" table.
    nested = data.get("parasynth")
    return nested if isinstance(nested, dict) else data


def _load_config() -> dict[str, Any]:
    path = _config_path()
    user_cfg: dict[str, Any] = {}
    if path.is_file():
        try:
            user_cfg = _read_config_file(path)
        except (OSError, ValueError) as e:
            print(f"Warning: config {path} not loaded ({e}); using defaults", file=sys.stderr)
    return _merge_config(DEFAULT_CONFIG, user_cfg)


def _save_config(cfg: dict[str, Any]) -> Path:
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(cfg, indent=2) + "\n", encoding="utf-8")
    return path


def _coerce_scalar(text: str) -> Any:
    value = text.strip()
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("none", "null"):
        return None
    if value[:1] in ("+", "-"):
        # Signed values are rate deltas.
        return text
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            continue
    if value[:1] in ("{", "["):
        try:
            return json.loads(value)
        except ValueError:
            pass
    return text


def _cfg_get(cfg: dict[str, Any], dotted: str, default: Any = None) -> Any:
    node: Any = cfg
    for key in dotted.split("."):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node


def _cfg_set(cfg: dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = cfg
    for key in parents:
        if not isinstance(node.get(key), dict):
            node[key] = {}
        node = node[key]
    node[leaf] = value


def _cfg_keys(cfg: dict[str, Any], prefix: str = "") -> list[str]:
    keys: list[str] = []
    for key, value in cfg.items():
        dotted = f"{prefix}{key}"
        keys.extend(_cfg_keys(value, dotted + ".") if isinstance(value, dict) else [dotted])
    return keys


def _resolve(cli_value: Any, cfg: dict[str, Any], dotted: str, fallback: Any) -> Any:
    """Command line beats config file, config file beats *fallback*."""
    if cli_value is not None:
        return cli_value
    configured = _cfg_get(cfg, dotted)
    return fallback if configured is None else configured


class _CliLogger:
    """Leveled append-only run log; safe to call from worker threads."""

    def __init__(self, level: int, log_path: Optional[Path]) -> None:
        self.level = max(0, min(3, int(level)))
        self.log_path = log_path if self.level > 0 else None
        self._lock = threading.Lock()

    def write(self, level: int, message: str) -> None:
        if self.log_path is None or level > self.level:
            return
        line = f"{datetime.now():%Y-%m-%d %H:%M:%S} {threading.current_thread().name}: {message}\n"
        with self._lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as fh:
                fh.write(line)


def _log_path_for(document: Optional[Path], target: Optional[str]) -> Path:
    name = f"{document.stem if document else 'parasynth'}-{datetime.now():%y%m%d.%H%M}.log"
    if target:
        p = Path(target).expanduser()
        if p.is_dir() or target.endswith(("/", "\\")) or not p.suffix:
            return p / name
        return p
    return (document.parent if document else Path.cwd()) / name


def _logging_level(args: argparse.Namespace, cfg: dict[str, Any]) -> int:
    for level in range(4):
        if getattr(args, f"l{level}", False):
            return level
    if getattr(args, "logging", None) is not None:
        return int(args.logging)
    return int(_cfg_get(cfg, "global.logging", 0) or 0)


def _setup_logger(args: argparse.Namespace, cfg: dict[str, Any]) -> _CliLogger:
    level = _logging_level(args, cfg)
    if level <= 0:
        return _CliLogger(0, None)
    document = Path(args.input).expanduser() if getattr(args, "input", None) else None
    target = getattr(args, "logging_file", None) or _cfg_get(cfg, "global.logging_file")
    path = _log_path_for(document, target)
    if getattr(args, "logging_clear", False) or _cfg_get(cfg, "global.logging_clear", False):
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("", encoding="utf-8")
    logger = _CliLogger(level, path)
    logger.write(1, f"log_file={path}")
    return logger


def _display_mode(args: argparse.Namespace, cfg: dict[str, Any]) -> str:
    choice = args.display if args.display is not None else _cfg_get(cfg, "global.display", "normal")
    return "rich" if choice in ("r", "rich") else "normal"


def _verbosity(args: argparse.Namespace, cfg: dict[str, Any]) -> int:
    if getattr(args, "quiet", False):
        return 0
    flagged = [n for n in range(4) if getattr(args, f"v{n}", False)]
    if flagged:
        return flagged[0]
    if args.verbose is not None:
        return int(args.verbose)
    return max(0, min(3, int(_cfg_get(cfg, "global.verbose", 2))))


def _print(obj: Any, *, verbosity: int, display: str) -> None:
    if verbosity <= 0:
        return
    if verbosity == 1:
        if isinstance(obj, dict) and obj.get("output"):
            print(obj["output"])
        return
    if display == "rich":
        console.print_json(json.dumps(obj, indent=2))
    else:
        print(json.dumps(obj, indent=2))


def _choose_document(root: Path) -> Path:
    """Ask which ``.txt`` under *root* to synthesize; raises when nothing can be asked."""
    documents = sorted(p for p in root.rglob("*.txt") if p.is_file())
    if not documents:
        raise FileNotFoundError(f"No .txt documents found in {root}")
    if not sys.stdin.isatty():
        raise UserCancelledError("No input given and stdin is not a terminal; pass the document path.")

    from prompt_toolkit.shortcuts import radiolist_dialog

    choice = radiolist_dialog(
        title="parasynth",
        text=f"{len(documents)} document(s) under {root}. Pick one to synthesize:",
        values=[(p, str(p.relative_to(root))) for p in documents],
    ).run()
    if choice is None:
        raise UserCancelledError("Selection cancelled.")
    return choice


def _opt_path(value: Any) -> Optional[Path]:
    return Path(str(value)).expanduser() if value else None


def _opt_int(value: Any) -> Optional[int]:
    return int(value) if value is not None else None


def _cmd_synth(args: argparse.Namespace) -> None:
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)

    backend = str(_resolve(args.backend, cfg, "synth.backend", pipeline.DEFAULT_BACKEND))
    voice = _resolve(args.voice, cfg, "synth.voice", None)
    rate = str(_resolve(args.rate, cfg, "synth.rate", pipeline.DEFAULT_RATE))
    parallel = _resolve(args.parallel, cfg, "synth.parallel", 1)
    convert = bool(_resolve(args.convert, cfg, "synth.convert", False))
    store_dir = _opt_path(_resolve(args.store_dir, cfg, "synth.store_dir", None))
    work_dir = _opt_path(_resolve(args.work_dir, cfg, "synth.work_dir", None))
    link_mode = str(_resolve(args.link_mode, cfg, "synth.link_mode", "auto"))
    retry_delay = float(_resolve(args.retry_delay, cfg, "synth.retry_delay_seconds", 3))
    max_attempts = _opt_int(_resolve(args.max_attempts, cfg, "synth.max_attempts", None))
    timeout = float(_resolve(args.request_timeout_seconds, cfg, "synth.request_timeout_seconds", 60))
    ffmpeg = _resolve(args.ffmpeg, cfg, "synth.ffmpeg", None)
    no_sidecar = bool(_resolve(args.no_sidecar, cfg, "synth.no_sidecar", False))

    # Range is checked before the input picker or any file I/O.
    workers = validate_workers(parallel)
    factory = make_backend_factory(
        backend,
        voice=voice,
        request_timeout_seconds=timeout,
        openai_model=_cfg_get(cfg, "synth.openai_model", None),
        openai_format=_cfg_get(cfg, "synth.openai_format", None),
    )

    synth_input = _opt_path(args.input) or _choose_document(Path.cwd())
    args.input = str(synth_input)
    logger = _setup_logger(args, cfg)
    logger.write(1, f"command=synth input={synth_input} backend={backend} rate={rate} parallel={workers}")

    def warn_cb(message: str) -> None:
        logger.write(1, f"warning {message}")
        if verbosity >= 1:
            if display == "rich":
                console.log(f"[yellow]{message}[/yellow]")
            else:
                print(f"Warning: {message}", file=sys.stderr, flush=True)

    def run(progress_cb: Any, info_cb: Any) -> dict[str, Any]:
        return pipeline.synth(
            synth_input,
            output_path=_opt_path(args.output),
            voice=voice,
            rate=rate,
            workers=workers,
            backend=backend,
            backend_factory=factory,
            store_dir=store_dir,
            work_root=work_dir,
            link_mode=link_mode,
            convert=convert,
            retry_delay_seconds=retry_delay,
            max_attempts=max_attempts,
            emit_sidecar=not no_sidecar,
            ffmpeg=ffmpeg,
            progress_cb=progress_cb,
            info_cb=info_cb,
            warn_cb=warn_cb,
        )

    if display != "rich" or verbosity < 2:

        def progress_cb(stage: str, current: int, total: int, message: str) -> None:
            logger.write(2, message)
            if verbosity >= 2:
                print(message, flush=True)

        def info_cb(message: str) -> None:
            logger.write(2, message)
            if verbosity >= 3:
                print(message, flush=True)

        out = run(progress_cb, info_cb)
    else:
        columns = (
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total} units"),
            TimeElapsedColumn(),
        )
        with Progress(*columns, console=console) as bar:
            units_task = bar.add_task(synth_input.name, total=None)

            def progress_cb(stage: str, current: int, total: int, message: str) -> None:
                bar.update(units_task, completed=current, total=total)
                logger.write(2, message)
                if verbosity >= 3:
                    console.log(message)

            def info_cb(message: str) -> None:
                logger.write(2, message)
                console.log(message)

            out = run(progress_cb, info_cb)
    logger.write(1, f"synth done output={out.get('output')} backend_calls={out.get('backend_calls')}")
    _print(out, verbosity=verbosity, display=display)


def _cmd_plan(args: argparse.Namespace) -> None:
    cfg = _load_config()
    display = _display_mode(args, cfg)
    verbosity = _verbosity(args, cfg)
    logger = _setup_logger(args, cfg)
    backend = str(_resolve(args.backend, cfg, "synth.backend", pipeline.DEFAULT_BACKEND))
    extension = _cfg_get(cfg, "synth.openai_format", None) if backend == "openai" else None
    out = pipeline.plan(
        Path(args.input).expanduser(),
        voice=_resolve(args.voice, cfg, "synth.voice", None),
        rate=str(_resolve(args.rate, cfg, "synth.rate", pipeline.DEFAULT_RATE)),
        backend=backend,
        extension=extension,
        store_dir=_opt_path(_resolve(args.store_dir, cfg, "synth.store_dir", None)),
    )
    logger.write(1, f"command=plan input={args.input} pending={out['pending']} cached={out['cached']}")
    _print(out, verbosity=2 if verbosity == 1 else verbosity, display=display)


_CONFIG_HINTS = (
    "synth.parallel 4",
    "synth.voice en-US-JennyNeural",
    "synth.rate +0.25",
    "synth.store_dir ~/audio-store",
    "global.display rich",
)


def _cmd_config(args: argparse.Namespace) -> None:
    cfg = _load_config()
    action = args.config_action
    if action == "path":
        print(_config_path())
    elif action == "show":
        print(json.dumps(cfg, indent=2))
        print("\nChange a value with `parasynth config set <key> <value>`, e.g.:")
        for hint in _CONFIG_HINTS:
            print(f"  parasynth config set {hint}")
        print("\nKeys: " + ", ".join(sorted(_cfg_keys(DEFAULT_CONFIG))))
    elif action == "get":
        print(json.dumps(_cfg_get(cfg, args.key), indent=2))
    elif action == "set":
        if args.key not in _cfg_keys(DEFAULT_CONFIG):
            raise ValueError(f"Unknown config key '{args.key}'; see `parasynth config show`")
        _cfg_set(cfg, args.key, _coerce_scalar(args.value))
        print(f"{args.key} saved to {_save_config(cfg)}")
    else:
        raise ValueError(f"Unknown config action: {action}")


def _output_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    out = common.add_argument_group("output")
    out.add_argument("--quiet", action="store_true", help="Same as -v0")
    out.add_argument("-d", "--display", choices=["rich", "normal", "r", "n"], default=None, help="Console style")
    out.add_argument("--verbose", type=int, choices=range(4), default=None, help="0 silent, 1 output path, 2 progress, 3 debug")
    for n in range(4):
        out.add_argument(f"-v{n}", action="store_true", help=argparse.SUPPRESS)
    log = common.add_argument_group("run log")
    log.add_argument("--logging", type=int, choices=range(4), default=None, help="Run log level (0 = no log file)")
    for n in range(4):
        log.add_argument(f"-l{n}", action="store_true", help=argparse.SUPPRESS)
    log.add_argument("--logging-file", default=None, help="Run log file, or a folder to put it in")
    log.add_argument("--logging-clear", action="store_true", help="Truncate the run log first")
    return common


def _voice_options() -> argparse.ArgumentParser:
    voice = argparse.ArgumentParser(add_help=False)
    voice.add_argument("--backend", choices=sorted(BACKENDS), default=None, help="Speech backend (default: edge)")
    voice.add_argument("--voice", default=None, help="Voice name, e.g. en-US-AriaNeural (edge/azure) or nova (openai)")
    voice.add_argument(
        "--rate",
        default=None,
        help="x-slow|slow|medium|fast|x-fast, a number > 0 (medium = 1), a delta (+0.5, -0.2) or a percent (+20%%)",
    )
    voice.add_argument("--store-dir", default=None, help="Audio cache store (default: ~/.cache/parasynth/store)")
    return voice


def build_parser() -> argparse.ArgumentParser:
    common, voice = _output_options(), _voice_options()
    parser = argparse.ArgumentParser(prog="parasynth", description="Paragraph-parallel text-to-speech with a content cache")
    commands = parser.add_subparsers(dest="command", required=True)

    sy = commands.add_parser("synth", parents=[common, voice], help="Synthesize a UTF-8 text document into one audio file")
    sy.add_argument("input", nargs="?", help="UTF-8 .txt document (prompted for when omitted)")
    sy.add_argument("-o", "--output", help="Output audio path (default: input name with the unit audio suffix)")
    sy.add_argument("-p", "--parallel", default=None, help="Synthesis workers, 1-8 (default: 1)")
    sy.add_argument("--convert", action="store_true", default=None, help="Re-encode instead of stream copy (needs full ffmpeg)")
    sy.add_argument("--work-dir", default=None, help="Where per-run work directories go (default: output folder)")
    sy.add_argument("--link-mode", choices=pipeline.LINK_MODES, default=None, help="How unit files reference cache blobs")
    sy.add_argument("--retry-delay", default=None, help="Seconds between synthesis retries (default: 3)")
    sy.add_argument("--max-attempts", default=None, help="Give up after N attempts per unit (default: never)")
    sy.add_argument("--request-timeout-seconds", default=None, help="Backend request timeout")
    sy.add_argument("--ffmpeg", default=None, help="ffmpeg executable to use")
    sy.add_argument("--no-sidecar", action="store_true", default=None, help="Skip writing plan.json into the work directory")
    sy.set_defaults(func=_cmd_synth)

    pl = commands.add_parser("plan", parents=[common, voice], help="Dry run: list empty, cached and pending units")
    pl.add_argument("input", help="UTF-8 .txt document")
    pl.set_defaults(func=_cmd_plan)

    cf = commands.add_parser("config", parents=[common], help="Show or change stored defaults")
    actions = cf.add_subparsers(dest="config_action", required=True)
    actions.add_parser("path", help="Print the config file location")
    actions.add_parser("show", help="Print the effective config")
    actions.add_parser("get", help="Print one dotted key").add_argument("key")
    setter = actions.add_parser("set", help="Store a value under a dotted key")
    setter.add_argument("key")
    setter.add_argument("value")
    cf.set_defaults(func=_cmd_config)
    return parser


def _argv_with_inferred_command(argv: list[str]) -> list[str]:
    """``parasynth book.txt ...`` is shorthand for ``parasynth synth book.txt ...``."""
    for token in argv:
        if token in ("synth", "plan", "config"):
            return argv
        # Option values such as the 4 in "-p 4" are passed over.
        if not token.startswith("-") and token.lower().endswith(".txt"):
            return ["synth", *argv]
    return argv


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    try:
        args = parser.parse_args(_argv_with_inferred_command(list(sys.argv[1:] if argv is None else argv)))
        args.func(args)
    except UserCancelledError as e:
        print(str(e))
        raise SystemExit(1)
    except ConcatError as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(e.returncode or 1)
    except (ParasynthError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("Cancelled.")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
