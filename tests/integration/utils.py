import functools
import os

import pytest


def skip_if_missing_env_vars(required_vars):
    """
    Decorator to skip tests if required environment variables are not set.

    Args:
        required_vars (list): List of environment variable names to check.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            missing = [var for var in required_vars if not os.getenv(var)]
            if missing:
                pytest.skip(
                    f"Missing required environment variables: {', '.join(missing)}. "
                    "Ensure they are set in your environment or .env file."
                )
            return func(*args, **kwargs)

        return wrapper

    return decorator


def verify_cli_success(result, expected_folder_id):
    """
    Verify common CLI success criteria for sync workflow tests.

    Args:
        result: CliRunner result object from typer.testing
        expected_folder_id: Expected folder ID in output
    """
    assert result.exit_code == 0, (
        f"Expected exit code 0, got {result.exit_code}\nOutput: {result.output}"
    )

    assert f"Processing folder: {expected_folder_id}" in result.output, (
        f"Expected folder ID {expected_folder_id} in output\nOutput: {result.output}"
    )
