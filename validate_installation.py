#!/usr/bin/env python3
"""
Validation script for DDG Sync.

Checks that dependencies import, that the package modules load, and that
department parsing and filter rendering work without touching a directory.
"""

import sys
import json
import importlib
import subprocess


def check_dependency(package_name, import_name=None):
    """Check if a package/module can be imported."""
    if import_name is None:
        import_name = package_name

    try:
        importlib.import_module(import_name)
        return True, f"✓ {package_name} available"
    except ImportError as e:
        return False, f"✗ {package_name} missing: {e}"


def validate_dependencies():
    """Validate all required dependencies."""
    print("=== Dependency Validation ===")

    dependencies = [
        ("ldap3", "ldap3"),
        ("PyYAML", "yaml"),
        ("pytest", "pytest"),
    ]

    all_ok = True
    for pkg_name, import_name in dependencies:
        ok, message = check_dependency(pkg_name, import_name)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_core_modules():
    """Validate core application modules."""
    print("\n=== Core Module Validation ===")

    modules = [
        "ddg_sync.config",
        "ddg_sync.department",
        "ddg_sync.directory",
        "ddg_sync.engine",
        "ddg_sync.filters",
        "ddg_sync.ldap_directory",
        "ddg_sync.logging_setup",
        "ddg_sync.main",
        "ddg_sync.outcomes",
        "ddg_sync.retry",
    ]

    all_ok = True
    for module in modules:
        ok, message = check_dependency(module, module)
        print(f"  {message}")
        if not ok:
            all_ok = False

    return all_ok


def validate_functionality():
    """Validate key functionality offline."""
    print("\n=== Functionality Validation ===")

    try:
        from ddg_sync.department import parse_department
        from ddg_sync.filters import build_identity, build_filter
        parsed = parse_department("10023 Accounts Payable - USA")
        identity = build_identity(parsed)
        if identity.name != "10023USA" or identity.display_name != "Accounts Payable - USA":
            print(f"  ✗ Unexpected group identity: {identity}")
            return False
        print("  ✓ Department parsing")

        membership_filter = build_filter(parsed)
        membership_filter.to_opath()
        membership_filter.to_ldap()
        print("  ✓ Filter rendering")

        from ddg_sync.engine import ReconciliationEngine, EngineSettings
        from ddg_sync.outcomes import OutcomeKind
        engine = ReconciliationEngine(directory=None, settings=EngineSettings(dry_run=True))
        if engine.reconcile("10023 Accounts Payable - USA").kind is not OutcomeKind.WHAT_IF:
            print("  ✗ What-if reconciliation did not plan the group")
            return False
        print("  ✓ What-if reconciliation")

        from ddg_sync.retry import retry_call
        retry_call(lambda: "test", "Validation", max_attempts=1, delay_unit=0)
        print("  ✓ Retry mechanism")

        return True

    except Exception as e:
        print(f"  ✗ Functionality test failed: {e}")
        return False


def validate_cli():
    """Validate command-line interface."""
    print("\n=== CLI Validation ===")

    try:
        result = subprocess.run([sys.executable, "-m", "ddg_sync.main", "--help"],
                                capture_output=True, text=True)
        if result.returncode == 0:
            print("  ✓ Help command working")
        else:
            print("  ✗ Help command failed")
            return False

        # Without a reachable directory the health check reports unhealthy
        result = subprocess.run([sys.executable, "-m", "ddg_sync.main", "--health-check"],
                                capture_output=True, text=True)
        try:
            health_data = json.loads(result.stdout)
        except json.JSONDecodeError:
            print("  ✗ Health check didn't return valid JSON")
            return False
        if 'status' in health_data and 'checks' in health_data:
            print(f"  ✓ Health check command working (status: {health_data['status']})")
        else:
            print("  ✗ Health check returned invalid JSON")
            return False

        return True

    except Exception as e:
        print(f"  ✗ CLI validation failed: {e}")
        return False


def main():
    """Run all validations."""
    print("DDG Sync - Installation Validation")
    print("=" * 50)

    all_validations = [
        validate_dependencies(),
        validate_core_modules(),
        validate_functionality(),
        validate_cli(),
    ]

    print("\n=== Summary ===")
    if all(all_validations):
        print("✓ All validations passed!")
        print("\nNext steps:")
        print("  1. Copy config.example.yaml to config.yaml and fill in your directory settings")
        print("  2. Test with: ddg-sync --health-check")
        print("  3. Preview changes with: ddg-sync --what-if")
        print("  4. Run sync: ddg-sync")
        return 0
    else:
        print("✗ Some validations failed!")
        print("Please resolve the issues above before using the application.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
