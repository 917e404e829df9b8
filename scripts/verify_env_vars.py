import os
import re
from pathlib import Path

REQUIRED = {"DATABASE_URL", "SECRET_KEY", "ADMIN_EMAIL", "ADMIN_PASSWORD_HASH"}


def find_env_vars():
    """Find all environment variables the settings and code reference."""
    env_vars = set()
    for py_file in Path("automation_platform").rglob("*.py"):
        content = py_file.read_text(encoding="utf-8", errors="ignore")
        env_vars.update(re.findall(r'alias=["\']([A-Z0-9_]+)["\']', content))
        env_vars.update(re.findall(r'os\.getenv\(["\']([A-Z0-9_]+)["\']', content))
    return sorted(env_vars)


def load_env_file(path: Path) -> set:
    if not path.exists():
        return set()
    names = set()
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if line and not line.startswith("#") and "=" in line:
            names.add(line.split("=", 1)[0].strip())
    return names


def verify():
    code_vars = set(find_env_vars())
    provided = load_env_file(Path(".env")) | set(os.environ)
    missing_required = sorted(REQUIRED - provided)
    unset_optional = sorted(code_vars - provided - REQUIRED)

    print("=== ENV VAR VERIFICATION ===")
    print(f"Code references: {len(code_vars)} unique vars")
    print("")
    if missing_required:
        print(f"MISSING REQUIRED ({len(missing_required)}):")
        for v in missing_required:
            print(f"  - {v}")
    else:
        print("All required vars are set.")
    print("")
    if unset_optional:
        print(f"USING DEFAULTS ({len(unset_optional)}):")
        for v in unset_optional:
            print(f"  - {v}")
    return not missing_required


if __name__ == "__main__":
    raise SystemExit(0 if verify() else 1)
