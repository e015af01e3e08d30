from airlocal.domain.sync.port.runtime import ContainerRuntime, ContainerSpec, OutputStream

__all__ = [
    "ContainerRuntime",
    "ContainerSpec",
    "OutputStream",
]
