"""vcshub - Server core for a hosted version-control service.

vcshub keeps projects, branches and commits in a metadata store, coordinates
path locks between collaborators, hands out presigned URLs for an
S3-compatible object store and garbage-collects objects no commit references.
"""

__version__ = "0.1.0"
__author__ = "vcshub Contributors"

__all__ = ["__version__", "__author__"]
