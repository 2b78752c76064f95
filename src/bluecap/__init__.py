"""
Bluecap - Named, reusable sandbox profiles behind a privilege boundary.

A capsule binds a container image, a set of runtime options and a set of
persistent directories. Commands run inside capsules through the container
runtime, while every mutation of the shared capsule store goes through
pkexec so that system-wide state and the generated polkit rules stay
consistent.

Example usage:
    $ bluecap create dev fedora:latest
    $ bluecap persistence dev /data
    $ bluecap run dev make -j4
    $ bluecap export dev make --as=dev-make
"""

__version__ = "0.2.0"
__author__ = "Bluecap Contributors"

__all__ = [
    "__version__",
    "__author__",
]
