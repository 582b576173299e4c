from __future__ import annotations

import re
import shutil
import subprocess
from dataclasses import dataclass

from .context import DeploymentTarget
from .docker_ops import ContainerRuntime
from .errors import RegistryAuthError
from .settings import Settings


ECR_RE = re.compile(r"^\d+\.dkr\.ecr\.([a-z0-9-]+)\.amazonaws\.com$")


@dataclass(frozen=True)
class Credentials:
    username: str
    password: str


def is_ecr(registry: str) -> bool:
    return bool(ECR_RE.match(registry))


def ecr_password(region: str) -> str:
    if not shutil.which("aws"):
        raise RegistryAuthError("ECR registry requires the aws CLI, which is not installed.")
    proc = subprocess.run(
        ["aws", "ecr", "get-login-password", "--region", region],
        capture_output=True,
        text=True,
        timeout=60,
    )
    if proc.returncode != 0 or not proc.stdout.strip():
        raise RegistryAuthError(
            f"ECR login failed. Check AWS credentials/role and network egress: {proc.stderr.strip()}"
        )
    return proc.stdout.strip()


def resolve_credentials(target: DeploymentTarget, s: Settings) -> Credentials | None:
    """Pick credentials for ``target.registry``; None means pull anonymously."""
    if s.registry_user and s.registry_password:
        return Credentials(s.registry_user, s.registry_password)
    if is_ecr(target.registry):
        region = ECR_RE.match(target.registry).group(1) or s.aws_region
        return Credentials("AWS", ecr_password(region))
    return None


def login(runtime: ContainerRuntime, target: DeploymentTarget, creds: Credentials | None) -> bool:
    if creds is None:
        return False
    runtime.login(target.registry, creds.username, creds.password)
    return True
