"""Example: scan several images for secrets concurrently."""

import asyncio
import logging
import sys

from check_image import (
    CheckImageError,
    SecretsPolicy,
    check_environment_variables,
    check_files_in_layers,
    get_image,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def scan(reference: str, policy: SecretsPolicy) -> int:
    """Scan one image and return its number of findings."""
    try:
        with await get_image(reference) as image:
            env_findings = check_environment_variables(image.config_file().env, policy)
            file_findings = await check_files_in_layers(image, policy)
    except CheckImageError as e:
        logger.error(f"{reference}: {e}")
        return -1

    for finding in env_findings:
        logger.info(f"{reference}: env {finding.name} ({finding.description})")
    for finding in file_findings:
        logger.info(f"{reference}: layer {finding.layer_index + 1} {finding.path} ({finding.description})")
    return len(env_findings) + len(file_findings)


async def main(references: list[str]) -> None:
    policy = SecretsPolicy(excluded_paths=["usr/share/doc/**"])
    results = await asyncio.gather(*(scan(reference, policy) for reference in references))

    for reference, count in zip(references, results, strict=False):
        status = "error" if count < 0 else f"{count} findings"
        print(f"{reference}: {status}")


if __name__ == "__main__":
    # e.g. python examples/scan_images.py alpine:3.20 oci:./layout:v1 docker-archive:app.tar
    asyncio.run(main(sys.argv[1:] or ["alpine:latest"]))
