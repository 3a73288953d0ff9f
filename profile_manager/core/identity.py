"""
Identity codec + the stable label/annotation contract.

Raw user identities (usually emails) can't be used as label values ("@" is illegal), so
derived resources are labelled with a deterministic digest and annotated with the raw
identity instead.
"""

from __future__ import annotations

import hashlib

# Label keys
LABEL_OWNER_ID = "owner.kubeflow.org/id"
LABEL_CONTRIBUTOR_ROLE = "contributor.kubeflow.org/role"
LABEL_PART_OF = "app.kubernetes.io/part-of"
LABEL_VISIBILITY = "kubeflow.org/visibility"

# Annotation keys
ANNOTATION_OWNER_NAME = "owner.kubeflow.org/name"
ANNOTATION_OWNER = "owner"  # namespace owner (adoption check) + legacy role-binding owner
ANNOTATION_ROLE = "role"  # legacy role-binding role

PART_OF_PROFILE = "kubeflow-profile"
VISIBILITY_PUBLIC = "public"

# Semantic roles used in labels and in the access API
ROLE_ADMIN = "admin"
ROLE_EDIT = "edit"


def identity_hash(identity: str) -> str:
    """
    32-char lowercase hex digest of `identity`, safe to use as a label value.

    Same input always yields the same token (no salt, no time component).
    """
    return hashlib.md5((identity or "").encode("utf-8")).hexdigest()


def local_name(identity: str) -> str:
    """
    The part of `identity` before the first "@".

    Not unique across domains (alice@a.com and alice@b.com collide); callers scope by
    namespace.
    """
    return (identity or "").split("@", 1)[0]
