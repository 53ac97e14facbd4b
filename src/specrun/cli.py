#!/usr/bin/env python3

import argparse
import glob
import hashlib
import importlib
import importlib.util
import json
import sys
import time
import unittest
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Sequence, TextIO

import toml


DEFAULT_PATTERN = "tests/**/test_*.py"

# exit codes above the failure range are reserved for aborted runs
MAX_FAILURE_EXIT_CODE = 254
SETUP_ERROR_EXIT_CODE = 255

REPORT_FILENAME = "report.json"

# accepted keys of the [tool.specrun] table and their types
CONFIG_KEYS = {
    "patterns": list,
    "require": list,
    "failfast": bool,
    "report_dir": str,
    "verbose": bool,
}


class SpecrunError(Exception):
    """Base class for errors that abort a run before any test executes."""


class SetupError(SpecrunError):
    """Raised when setup modules, discovery or spec loading fail."""


class ConfigError(SpecrunError):
    """Raised for an unreadable or invalid [tool.specrun] table."""


# this function reads the optional [tool.specrun] table from pyproject.toml
def load_config(directory: Optional[str] = None) -> Dict:
    pyproject = Path(directory or ".") / "pyproject.toml"
    if not pyproject.is_file():
        return {}

    try:
        with open(pyproject, encoding="utf-8") as file:
            data = toml.load(file)
    except toml.TomlDecodeError as e:
        raise ConfigError(f"Invalid TOML in {pyproject}: {e}") from e
    except OSError as e:
        raise ConfigError(f"Cannot read {pyproject}: {e}") from e

    section = data.get("tool", {}).get("specrun", {})
    if not isinstance(section, dict):
        raise ConfigError(f"[tool.specrun] in {pyproject} must be a table")

    for key, value in section.items():
        if key not in CONFIG_KEYS:
            raise ConfigError(f"Unknown setting '{key}' in [tool.specrun] of {pyproject}")

        expected_type = CONFIG_KEYS[key]
        if not isinstance(value, expected_type):
            raise ConfigError(
                f"Setting '{key}' in {pyproject} must be of type {expected_type.__name__}"
            )
        if expected_type is list and not all(isinstance(item, str) for item in value):
            raise ConfigError(f"Setting '{key}' in {pyproject} must be a list of strings")

    return dict(section)


# this function expands glob patterns into an ordered list of spec files
def expand_patterns(patterns: Sequence[str], cwd: Optional[str] = None, verbose: bool = False) -> List[Path]:
    """Expand glob patterns into unique, existing files.

    Patterns are relative to ``cwd`` unless absolute, ``**`` spans
    directories and a leading ``!`` removes the files matched so far by
    that pattern. Each pattern's matches are sorted; the combined result
    keeps first-seen order.
    """
    base_dir = Path(cwd) if cwd is not None else Path.cwd()
    if not base_dir.is_dir():
        raise SetupError(f"Directory does not exist: {base_dir}")

    # keyed by resolved path so symlinks and "a/../a" collapse to one entry
    matched: Dict[str, Path] = {}

    for pattern in patterns:
        exclude = pattern.startswith("!")
        if exclude:
            pattern = pattern[1:]
        if not pattern:
            raise SetupError("Empty glob pattern")

        try:
            hits = sorted(glob.glob(pattern, root_dir=base_dir, recursive=True))
        except OSError as e:
            raise SetupError(f"Cannot expand pattern {pattern}: {e}") from e

        if verbose:
            action = "Excluding" if exclude else "Matched"
            print(f" | {action} {len(hits)} paths for {pattern}")

        for hit in hits:
            path = base_dir / hit
            if not path.is_file():
                continue

            try:
                resolved_path = path.resolve()
            except (OSError, RuntimeError) as e:
                raise SetupError(f"Cannot resolve path {path}: {e}") from e

            key = str(resolved_path)
            if exclude:
                matched.pop(key, None)
            elif key in matched:
                if verbose:
                    print(f"[-] Warning: Duplicate file path ignored: {path}")
            else:
                matched[key] = resolved_path

    spec_files = []
    for path in matched.values():
        # only Python sources can be registered with the loader
        if not path.name.lower().endswith(".py"):
            print(f"[-] Warning: Not a Python file, skipping: {path}")
            continue
        spec_files.append(path)

    return spec_files


def module_name_for(path: Path, prefix: str = "specrun_spec") -> str:
    digest = hashlib.sha1(str(path).encode("utf-8")).hexdigest()[:10]
    stem = "".join(char if char.isalnum() else "_" for char in path.stem)
    return f"{prefix}_{stem}_{digest}"


def add_to_sys_path(directory: Path) -> None:
    entry = str(directory)
    if entry not in sys.path:
        sys.path.insert(0, entry)


def import_from_path(path: Path, module_name: str):
    if not path.is_file():
        raise SetupError(f"File does not exist: {path}")

    spec = importlib.util.spec_from_file_location(module_name, path)
    if spec is None or spec.loader is None:
        raise SetupError(f"Cannot create an import spec for {path}")

    # lets the file import modules that sit next to it
    add_to_sys_path(path.parent)

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except (Exception, SystemExit):
        sys.modules.pop(module_name, None)
        raise
    return module


# this function loads support modules that must run before any spec file
def load_setup_modules(requires: Sequence[str], cwd: Optional[str] = None, verbose: bool = False) -> None:
    base_dir = (Path(cwd) if cwd is not None else Path.cwd()).resolve()

    for require in requires:
        if verbose:
            print(f" | Loading setup module {require}")

        try:
            if require.endswith(".py") or "/" in require or "\\" in require:
                path = Path(require)
                if not path.is_absolute():
                    path = base_dir / path
                path = path.resolve()
                import_from_path(path, module_name_for(path, prefix="specrun_setup"))
            else:
                # dotted names resolve against the working directory first
                add_to_sys_path(base_dir)
                importlib.import_module(require)
        except SetupError:
            raise
        except (Exception, SystemExit) as e:
            raise SetupError(f"Failed to load setup module {require}: {type(e).__name__}: {e}") from e


def load_spec_file(path: Path):
    try:
        return import_from_path(path, module_name_for(path))
    except SetupError:
        raise
    except (Exception, SystemExit) as e:
        raise SetupError(f"Failed to load spec file {path}: {type(e).__name__}: {e}") from e


# this function registers every spec file's tests in a single suite
def build_suite(files: Sequence[Path], loader: Optional[unittest.TestLoader] = None, verbose: bool = False) -> unittest.TestSuite:
    loader = loader or unittest.TestLoader()
    suite = unittest.TestSuite()

    for i, path in enumerate(files, 1):
        if verbose:
            print(f" | {i}/{len(files)}: {path}")

        module = load_spec_file(path)
        suite.addTests(loader.loadTestsFromModule(module))

        # load_tests() hooks report their failures through loader.errors
        if loader.errors:
            raise SetupError(f"Failed to collect tests from {path}:\n{loader.errors[0]}")

    return suite


class SpecTestResult(unittest.TextTestResult):
    """TextTestResult that also keeps one record per test outcome."""

    def __init__(self, stream, descriptions, verbosity, **kwargs):
        super().__init__(stream, descriptions, verbosity, **kwargs)
        self.records: List[Dict] = []
        self._started: Dict[str, float] = {}
        self._subtest_marks: Dict[str, float] = {}

    def startTest(self, test):
        self._started[test.id()] = time.perf_counter()
        self._subtest_marks[test.id()] = self._started[test.id()]
        super().startTest(test)

    def stopTest(self, test):
        super().stopTest(test)
        # tests with failing subtests never reach an add* outcome of their own
        self._started.pop(test.id(), None)
        self._subtest_marks.pop(test.id(), None)

    def _record(self, test, outcome: str, message: Optional[str] = None):
        started = self._started.pop(test.id(), None)
        duration = time.perf_counter() - started if started is not None else 0.0
        self.records.append({
            "id": test.id(),
            "description": test.shortDescription(),
            "outcome": outcome,
            "duration": round(duration, 6),
            "message": message,
        })

    def addSuccess(self, test):
        super().addSuccess(test)
        self._record(test, "passed")

    def addFailure(self, test, err):
        super().addFailure(test, err)
        self._record(test, "failed", self._exc_info_to_string(err, test))

    def addError(self, test, err):
        super().addError(test, err)
        self._record(test, "error", self._exc_info_to_string(err, test))

    def addSkip(self, test, reason):
        super().addSkip(test, reason)
        self._record(test, "skipped", reason)

    def addExpectedFailure(self, test, err):
        super().addExpectedFailure(test, err)
        self._record(test, "expected failure", self._exc_info_to_string(err, test))

    def addUnexpectedSuccess(self, test):
        super().addUnexpectedSuccess(test)
        self._record(test, "unexpected success")

    def addSubTest(self, test, subtest, err):
        super().addSubTest(test, subtest, err)

        # each subtest is timed from the end of the previous one
        now = time.perf_counter()
        mark = self._subtest_marks.get(test.id(), now)
        self._subtest_marks[test.id()] = now

        if err is not None:
            outcome = "failed" if issubclass(err[0], test.failureException) else "error"
            self.records.append({
                "id": subtest.id(),
                "description": subtest.shortDescription(),
                "outcome": outcome,
                "duration": round(now - mark, 6),
                "message": self._exc_info_to_string(err, test),
            })


# this class tracks the outcome of a whole run
class RunResult:
    def __init__(self, spec_files: Optional[Sequence[Path]] = None):
        self.spec_files: List[Path] = list(spec_files or [])
        self.tests_run = 0
        self.failures = 0
        self.errors = 0
        self.skipped = 0
        self.expected_failures = 0
        self.unexpected_successes = 0
        self.records: List[Dict] = []
        self.start_time = time.time()
        self.end_time: Optional[float] = None

    def add_test_result(self, test_result: unittest.TestResult):
        self.tests_run = test_result.testsRun
        self.failures = len(test_result.failures)
        self.errors = len(test_result.errors)
        self.skipped = len(test_result.skipped)
        self.expected_failures = len(test_result.expectedFailures)
        self.unexpected_successes = len(test_result.unexpectedSuccesses)
        self.records = list(getattr(test_result, "records", []))
        self.end_time = time.time()

    @property
    def failure_count(self) -> int:
        return self.failures + self.errors + self.unexpected_successes

    @property
    def passes(self) -> int:
        return sum(1 for record in self.records if record["outcome"] == "passed")

    @property
    def elapsed(self) -> float:
        end_time = self.end_time if self.end_time is not None else time.time()
        return end_time - self.start_time

    def exit_code(self) -> int:
        return min(self.failure_count, MAX_FAILURE_EXIT_CODE)

    def get_summary(self) -> str:
        summary = f"\n[+] Run Summary:\n"
        summary += f" | Spec files: {len(self.spec_files)}\n"
        summary += f" | Tests run: {self.tests_run}\n"
        summary += f" | Passed: {self.passes}\n"
        summary += f" | Failed: {self.failures}\n"
        summary += f" | Errors: {self.errors}\n"
        summary += f" | Skipped: {self.skipped}\n"
        if self.expected_failures or self.unexpected_successes:
            summary += f" | Expected failures: {self.expected_failures}\n"
            summary += f" | Unexpected successes: {self.unexpected_successes}\n"
        summary += f" | Time taken: {self.elapsed:.2f} seconds\n"

        failing = [record for record in self.records if record["outcome"] in ("failed", "error", "unexpected success")]
        if failing:
            summary += f"\n[!] Failing tests:\n"
            for record in failing:
                summary += f" | {record['id']} ({record['outcome']})\n"

        return summary

    def to_dict(self) -> Dict:
        def timestamp(value):
            if value is None:
                return None
            return datetime.fromtimestamp(value, tz=timezone.utc).isoformat()

        return {
            "stats": {
                "specFiles": len(self.spec_files),
                "tests": self.tests_run,
                "passes": self.passes,
                "failures": self.failures,
                "errors": self.errors,
                "skipped": self.skipped,
                "expectedFailures": self.expected_failures,
                "unexpectedSuccesses": self.unexpected_successes,
                "failureCount": self.failure_count,
                "start": timestamp(self.start_time),
                "end": timestamp(self.end_time),
                "duration": round(self.elapsed, 6),
            },
            "specFiles": [str(path) for path in self.spec_files],
            "results": self.records,
        }


# this function writes the machine readable report of a run
def write_json_report(result: RunResult, report_dir) -> Path:
    report_path = Path(report_dir) / REPORT_FILENAME
    try:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        with open(report_path, "w", encoding="utf-8") as file:
            json.dump(result.to_dict(), file, indent=2)
    except OSError as e:
        raise SpecrunError(f"Cannot write report to {report_path}: {e}") from e
    return report_path


def run_specs(
    patterns: Sequence[str],
    requires: Sequence[str] = (),
    cwd: Optional[str] = None,
    failfast: bool = False,
    verbosity: int = 1,
    report_dir: Optional[str] = None,
    verbose: bool = False,
    stream: Optional[TextIO] = None,
) -> RunResult:
    """Load setup modules, expand ``patterns``, register and run the specs.

    Every step finishes before the next one starts, so a ``SetupError``
    from any of the first three means no test has run.
    """
    result = RunResult()

    if requires:
        if verbose:
            print(f"\n[+] Loading {len(requires)} setup modules")
        load_setup_modules(requires, cwd, verbose)

    if verbose:
        print(f"\n[+] Expanding {len(patterns)} patterns")
    spec_files = expand_patterns(patterns, cwd, verbose)
    result.spec_files = spec_files

    if not spec_files:
        print(f"[-] Warning: No spec files matched {', '.join(patterns)}")
    elif verbose:
        print(f"\n[+] Registering {len(spec_files)} spec files")

    suite = build_suite(spec_files, verbose=verbose)

    runner = unittest.TextTestRunner(
        stream=stream or sys.stderr,
        verbosity=verbosity,
        failfast=failfast,
        resultclass=SpecTestResult,
    )
    result.add_test_result(runner.run(suite))

    if report_dir is not None:
        report_path = Path(report_dir)
        if not report_path.is_absolute() and cwd is not None:
            report_path = Path(cwd) / report_path
        written = write_json_report(result, report_path)
        if verbose:
            print(f"\n[+] Report written to {written}")

    return result


# this function displays the specrun ASCII art banner
def display_banner():
    banner = """
███████╗ ██████╗  ███████╗  ██████╗ ██████╗  ██╗   ██╗ ███╗   ██╗
██╔════╝ ██╔══██╗ ██╔════╝ ██╔════╝ ██╔══██╗ ██║   ██║ ████╗  ██║
███████╗ ██████╔╝ █████╗   ██║      ██████╔╝ ██║   ██║ ██╔██╗ ██║
╚════██║ ██╔═══╝  ██╔══╝   ██║      ██╔══██╗ ██║   ██║ ██║╚██╗██║
███████║ ██║      ███████╗ ╚██████╗ ██║  ██║ ╚██████╔╝ ██║ ╚████║
╚══════╝ ╚═╝      ╚══════╝  ╚═════╝ ╚═╝  ╚═╝  ╚═════╝  ╚═╝  ╚═══╝
"""
    print(banner)
    print("└─ Run unittest spec files matched by glob patterns")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="specrun",
        description="Run unittest spec files matched by glob patterns and exit with the failure count",
    )

    parser.add_argument(
        "patterns", nargs="*", metavar="PATTERN",
        help=f"glob patterns selecting spec files, '!' prefix excludes (default: {DEFAULT_PATTERN})",
    )

    parser.add_argument("--require", action="append", default=None, metavar="MODULE",
                        help="setup module or .py file loaded before the specs (repeatable)")
    parser.add_argument("--cwd", default=None, metavar="DIR", help="directory patterns are resolved against")
    parser.add_argument("--failfast", action="store_true", default=None, help="stop on the first failing test")
    parser.add_argument("--report-dir", default=None, metavar="DIR", help=f"write {REPORT_FILENAME} to DIR")
    parser.add_argument("--dry-run", action="store_true", help="list matched spec files without running them")
    parser.add_argument("--verbose", action="store_true", default=None, help="enable verbose output")
    parser.add_argument("--quiet", action="store_true", help="minimal test runner output")
    parser.add_argument("--no-banner", action="store_true", help="disable ASCII art banner display")

    return parser


# this is the main function that sequences discovery, registration and execution
def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.cwd)
    except ConfigError as e:
        print(f"Error: {e}")
        return SETUP_ERROR_EXIT_CODE

    # command line values win over [tool.specrun]
    patterns = args.patterns or config.get("patterns") or [DEFAULT_PATTERN]
    requires = args.require if args.require is not None else config.get("require", [])
    failfast = args.failfast if args.failfast is not None else config.get("failfast", False)
    verbose = args.verbose if args.verbose is not None else config.get("verbose", False)
    report_dir = args.report_dir if args.report_dir is not None else config.get("report_dir")

    if args.quiet:
        verbosity = 0
    elif verbose:
        verbosity = 2
    else:
        verbosity = 1

    if not args.no_banner:
        display_banner()

    if args.dry_run:
        try:
            spec_files = expand_patterns(patterns, args.cwd, verbose)
        except SpecrunError as e:
            print(f"Error: {e}")
            return SETUP_ERROR_EXIT_CODE

        print(f"\n[+] {len(spec_files)} spec files matched")
        for path in spec_files:
            print(f" | {path}")
        return 0

    try:
        result = run_specs(
            patterns,
            requires=requires,
            cwd=args.cwd,
            failfast=failfast,
            verbosity=verbosity,
            report_dir=report_dir,
            verbose=verbose,
        )
    except SpecrunError as e:
        print(f"Error: {e}")
        if isinstance(e, SetupError):
            print("No tests were run")
        return SETUP_ERROR_EXIT_CODE

    if verbose or result.failure_count > 0:
        print(result.get_summary())

    return result.exit_code()


if __name__ == "__main__":
    sys.exit(main())
