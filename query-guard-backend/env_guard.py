#!/usr/bin/env python3
"""
QueryGuard Environment Guard - Fail-Fast Startup Validation

Called from the application lifespan before the connection pool is created
so a broken install or missing DATABASE_URL is reported up front instead of
on the first query.

GUARANTEES:
1. All critical dependencies are importable
2. Required environment variables are set
3. DATABASE_URL names a dialect SQLAlchemy can load

USAGE:
    from env_guard import validate_environment
    validate_environment()  # Raises EnvironmentError if invalid
"""

import sys
import os
from typing import List, Tuple

from dotenv import load_dotenv

# ============================================================================
# CONFIGURATION
# ============================================================================
REQUIRED_PACKAGES = [
    # (module_name, package_name, verification_attribute)
    ("fastapi", "fastapi", "__version__"),
    ("uvicorn", "uvicorn", "__version__"),
    ("sqlalchemy", "sqlalchemy", "__version__"),
    ("sqlparse", "sqlparse", "__version__"),
    ("pydantic", "pydantic", "__version__"),
    ("dotenv", "python-dotenv", None),
    ("pandas", "pandas", "__version__"),
]

REQUIRED_ENV_VARS = [
    "DATABASE_URL",
]


# ============================================================================
# VALIDATION FUNCTIONS
# ============================================================================

def validate_packages() -> Tuple[List[str], List[str]]:
    """
    Validate all required packages are importable.

    Returns:
        (errors, package_info)
    """
    errors = []
    info = []

    for module_name, package_name, verify_attr in REQUIRED_PACKAGES:
        try:
            module = __import__(module_name, fromlist=[''])
        except ImportError as e:
            errors.append(
                f"MISSING PACKAGE: {package_name}\n"
                f"  Import error: {e}\n"
                f"  Solution: pip install {package_name}"
            )
            continue

        if verify_attr and hasattr(module, verify_attr):
            info.append(f"  {package_name}: {getattr(module, verify_attr)}")
        else:
            info.append(f"  {package_name}: imported")

    return errors, info


def validate_env_vars() -> List[str]:
    """
    Validate required environment variables are set.

    Returns:
        List of errors (empty if valid)
    """
    errors = []
    load_dotenv()

    for var_name in REQUIRED_ENV_VARS:
        if not os.getenv(var_name):
            errors.append(
                f"MISSING ENVIRONMENT VARIABLE: {var_name}\n"
                f"  Solution: Add {var_name}=your_value to .env file"
            )

    return errors


def validate_database_url() -> List[str]:
    """
    Check that DATABASE_URL parses and its dialect/driver is installed.

    Returns:
        List of errors (empty if valid or unset; unset is reported elsewhere)
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        return []

    from sqlalchemy.engine import make_url
    from sqlalchemy.exc import ArgumentError, NoSuchModuleError

    try:
        make_url(url).get_dialect()
    except ArgumentError as e:
        return [f"INVALID DATABASE_URL\n  {e}"]
    except NoSuchModuleError as e:
        return [
            f"DATABASE DRIVER NOT AVAILABLE\n"
            f"  {e}\n"
            f"  Solution: pip install psycopg2-binary (PostgreSQL)"
        ]
    except ImportError as e:
        return [f"DATABASE DRIVER NOT IMPORTABLE\n  {e}"]

    return []


def _mask(value: str) -> str:
    return value[:4] + "..." + value[-4:] if len(value) > 12 else "***"


def validate_environment(strict: bool = True) -> bool:
    """
    Run all environment validations.

    Args:
        strict: If True, raise EnvironmentError on any failure.
                If False, print warnings and return success status.

    Returns:
        True if environment is valid, False otherwise.

    Raises:
        EnvironmentError: If strict=True and validation fails.
    """
    print("=" * 70)
    print("QUERYGUARD ENVIRONMENT GUARD - Startup Validation")
    print("=" * 70)

    all_errors = []

    print("\n[1/3] Checking required packages...")
    package_errors, package_info = validate_packages()
    all_errors.extend(package_errors)
    for info in package_info:
        print(info)

    print("\n[2/3] Checking environment variables...")
    all_errors.extend(validate_env_vars())
    for var in REQUIRED_ENV_VARS:
        value = os.getenv(var)
        print(f"  {var}: {_mask(value) if value else 'NOT SET'}")

    print("\n[3/3] Checking database driver...")
    url_errors = validate_database_url()
    all_errors.extend(url_errors)
    if not url_errors and os.getenv("DATABASE_URL"):
        print("  Dialect: OK")

    print("\n" + "=" * 70)

    if all_errors:
        print("ENVIRONMENT VALIDATION FAILED!")
        print("=" * 70)
        for i, error in enumerate(all_errors, 1):
            print(f"\nError {i}:")
            print(error)

        if strict:
            raise EnvironmentError(
                f"Environment validation failed with {len(all_errors)} error(s). "
                f"See above for details."
            )
        return False

    print("ENVIRONMENT VALIDATION PASSED!")
    print("=" * 70)
    return True


# ============================================================================
# MAIN (for standalone testing)
# ============================================================================
if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="QueryGuard Environment Guard")
    parser.add_argument(
        "--strict",
        action="store_true",
        help="Exit with error code on failure"
    )
    args = parser.parse_args()

    try:
        success = validate_environment(strict=args.strict)
        sys.exit(0 if success else 1)
    except EnvironmentError as e:
        print(f"\n\nFATAL: {e}")
        sys.exit(1)
