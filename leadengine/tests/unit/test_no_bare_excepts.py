"""
Ensures errors are handled with typed except clauses

Bare ``except:`` blocks would also swallow KeyboardInterrupt and SystemExit
inside workers; the package must use typed handlers that log.
"""
import re
from pathlib import Path

PACKAGE_ROOT = Path(__file__).resolve().parents[2]


def test_no_bare_except_blocks_remain():
    """Verify no bare except blocks exist in the package"""
    bare_except_pattern = re.compile(r"^\s*except\s*:", re.MULTILINE)

    offenders = []
    for path in PACKAGE_ROOT.rglob("*.py"):
        if "tests" in path.parts:
            continue
        if bare_except_pattern.search(path.read_text()):
            offenders.append(str(path.relative_to(PACKAGE_ROOT)))

    assert offenders == [], f"Found bare except blocks in {offenders}"


def test_no_silently_passed_exceptions():
    """Verify caught exceptions are never silently discarded"""
    swallowed_pattern = re.compile(r"except[^\n]*:\s*\n\s*pass\b")

    for path in PACKAGE_ROOT.rglob("*.py"):
        if "tests" in path.parts:
            continue
        matches = swallowed_pattern.findall(path.read_text())
        assert len(matches) == 0, f"Found {len(matches)} swallowed exceptions in {path.name}"
