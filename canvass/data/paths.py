"""Collection names and path helpers for the persisted layout.

Paths are slash-separated and alternate collection/document segments:
``buildings`` is a collection, ``buildings/b1`` a document,
``buildings/b1/apartments`` a subcollection.
"""

from typing import List

COLLECTION_BUILDINGS = "buildings"
COLLECTION_APARTMENTS = "apartments"
COLLECTION_USERS = "users"
COLLECTION_VISITS = "visits"


def split_path(path: str) -> List[str]:
    segments = [s for s in path.strip("/").split("/") if s]
    if not segments:
        raise ValueError("Empty store path")
    return segments


def join_path(*segments: str) -> str:
    """Join path pieces; a piece may itself be a joined path like ``users/u1/visits``."""
    for segment in segments:
        if not segment or any(not part for part in segment.split("/")):
            raise ValueError(f"Invalid path segment: {segment!r}")
    return "/".join(segments)


def is_document_path(path: str) -> bool:
    return len(split_path(path)) % 2 == 0


def parent_collection(document_path: str) -> str:
    segments = split_path(document_path)
    if len(segments) % 2:
        raise ValueError(f"Not a document path: {document_path}")
    return "/".join(segments[:-1])


def document_id(document_path: str) -> str:
    return split_path(document_path)[-1]


def buildings_path() -> str:
    return COLLECTION_BUILDINGS


def building_path(building_id: str) -> str:
    return join_path(COLLECTION_BUILDINGS, building_id)


def apartments_path(building_id: str) -> str:
    return join_path(COLLECTION_BUILDINGS, building_id, COLLECTION_APARTMENTS)


def apartment_path(building_id: str, apartment_id: str) -> str:
    return join_path(COLLECTION_BUILDINGS, building_id, COLLECTION_APARTMENTS, apartment_id)


def user_path(uid: str) -> str:
    return join_path(COLLECTION_USERS, uid)


def visits_path(uid: str) -> str:
    return join_path(COLLECTION_USERS, uid, COLLECTION_VISITS)


def visit_path(uid: str, visit_id: str) -> str:
    return join_path(COLLECTION_USERS, uid, COLLECTION_VISITS, visit_id)
