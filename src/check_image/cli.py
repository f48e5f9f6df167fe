"""Command line interface for check-image."""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

from . import __version__
from .core.credentials import CredentialProvider, default_keychain, keychain_with_static
from .exceptions import CheckImageError
from .secrets import check_environment_variables, check_files_in_layers, load_secrets_policy
from .secrets.detector import EnvVarFinding, FileFinding
from .transport import get_image, get_image_registry
from .utils.logging import setup_logging

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_VALIDATION_FAILED = 1
EXIT_ERROR = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="check-image",
        description="Validate container images from a daemon, registry, OCI layout or tarball.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--log-level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: warning)",
    )
    parser.add_argument("--username", help="Registry username")
    credentials = parser.add_mutually_exclusive_group()
    credentials.add_argument("--password", help="Registry password or token")
    credentials.add_argument("--password-stdin", action="store_true", help="Read the registry password from stdin")

    subparsers = parser.add_subparsers(dest="command", required=True)

    secrets_parser = subparsers.add_parser(
        "secrets",
        help="Validate that the image does not contain sensitive data",
        description=(
            "Scan environment variables and files across all image layers for "
            "passwords, tokens and keys."
        ),
    )
    secrets_parser.add_argument("image", help="Image reference, e.g. nginx:latest or oci:./layout:v1")
    secrets_parser.add_argument("-p", "--secrets-policy", default="", help="Secrets policy file (JSON or YAML, - for stdin)")
    secrets_parser.add_argument("--skip-env-vars", action="store_true", help="Skip environment variable checks")
    secrets_parser.add_argument("--skip-files", action="store_true", help="Skip file system checks")
    secrets_parser.add_argument("-o", "--output", choices=["text", "json"], default="text", help="Output format")

    registry_parser = subparsers.add_parser("registry", help="Print the registry an image reference points to")
    registry_parser.add_argument("image", help="Image reference")

    return parser


def _credentials_from_args(args: argparse.Namespace) -> CredentialProvider:
    password = args.password
    if args.password_stdin:
        password = sys.stdin.readline().rstrip("\n")
    if args.username and password:
        return keychain_with_static(args.username, password)
    if args.username or password:
        raise CheckImageError("--username and --password must be given together")
    return default_keychain()


def _printable(value: str) -> str:
    # Entry names that are not valid UTF-8 carry surrogate escapes
    return value.encode("utf-8", "backslashreplace").decode("utf-8")


def _print_text(image: str, env_findings: list[EnvVarFinding], file_findings: list[FileFinding], both: bool) -> None:
    print(f"Checking secrets in image {_printable(image)}")

    if env_findings:
        print("\nEnvironment Variables:")
        for finding in env_findings:
            print(f"  - {_printable(finding.name)} ({finding.description})")

    if file_findings:
        print("\nFiles with Sensitive Patterns:")
        for layer_index in sorted({finding.layer_index for finding in file_findings}):
            print(f"  Layer {layer_index + 1}:")
            for finding in file_findings:
                if finding.layer_index == layer_index:
                    print(f"    - {_printable(finding.path)} ({finding.description})")

    total = len(env_findings) + len(file_findings)
    summary = f"\nTotal findings: {total}"
    if both:
        summary += f" ({len(env_findings)} environment variables, {len(file_findings)} files)"
    print(summary)
    print("Secrets detected" if total else "No secrets detected")


async def run_secrets(args: argparse.Namespace, credentials: CredentialProvider) -> int:
    policy = load_secrets_policy(args.secrets_policy)
    if args.skip_env_vars:
        policy.check_env_vars = False
    if args.skip_files:
        policy.check_files = False

    with await get_image(args.image, credentials) as image:
        env_findings = check_environment_variables(image.config_file().env, policy)
        file_findings = await check_files_in_layers(image, policy)

    if args.output == "json":
        print(
            json.dumps(
                {
                    "image": args.image,
                    "passed": not env_findings and not file_findings,
                    "environment-variables": [vars(f) for f in env_findings],
                    "files": [vars(f) for f in file_findings],
                },
                indent=2,
            )
        )
    else:
        _print_text(args.image, env_findings, file_findings, policy.check_env_vars and policy.check_files)

    return EXIT_VALIDATION_FAILED if env_findings or file_findings else EXIT_SUCCESS


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        if args.command == "registry":
            print(get_image_registry(args.image))
            return EXIT_SUCCESS

        credentials = _credentials_from_args(args)
        return asyncio.run(run_secrets(args, credentials))
    except CheckImageError as e:
        logger.error("check %s operation failed: %s", args.command, e)
        return EXIT_ERROR
