from functools import lru_cache

import docker

from .config import settings


@lru_cache(maxsize=1)
def get_docker_client() -> docker.DockerClient:
    # Connect to the Docker socket lazily so importing the app never touches it
    return docker.DockerClient(base_url=settings.docker_base_url)
