import logging

from pymongo import ReturnDocument
from pymongo.collection import Collection

from catalog_errors import NotFoundError, ValidationError, store_operation
from common_functions import build_identifier_query, identifier_candidates, normalize_id_list

logger = logging.getLogger(__name__)

USER_SET_FIELDS = {
    "liked": "liked_movies",
    "watchlist": "watchlist",
}


def find_user(identifier: str, users_collection: Collection, projection: dict | None = None):
    """
    Locate a user by id, stored as a string or an ObjectId.

    Args:
        identifier (str): Identifier supplied by the client.
        users_collection (Collection): MongoDB collection handle.
        projection (dict | None): Optional projection.

    Returns:
        dict | None: Matching user document.
    """
    if not identifier_candidates(identifier):
        return None
    with store_operation("look up a user"):
        return users_collection.find_one(build_identifier_query(identifier), projection)


def require_user(identifier: str, users_collection: Collection, projection: dict | None = None):
    """
    Locate a user or raise NotFoundError.

    Args:
        identifier (str): Identifier supplied by the client.
        users_collection (Collection): MongoDB collection handle.
        projection (dict | None): Optional projection.

    Returns:
        dict: Matching user document.
    """
    user = find_user(identifier, users_collection, projection)
    if not user:
        raise NotFoundError("User not found")
    return user


def get_user_sets(user_doc: dict | None):
    """
    Read the liked and watchlist sets from a user document.

    Args:
        user_doc (dict | None): User document, possibly missing the fields.

    Returns:
        tuple[list[str], list[str]]: Liked ids and watchlist ids.
    """
    if not isinstance(user_doc, dict):
        return [], []
    return (
        normalize_id_list(user_doc.get(USER_SET_FIELDS["liked"])),
        normalize_id_list(user_doc.get(USER_SET_FIELDS["watchlist"])),
    )


def resolve_user_sets(user_id: str | None, users_collection: Collection):
    """
    Resolve the sets used to annotate results for a caller.

    An anonymous caller gets empty sets, an unknown user id is a miss.

    Args:
        user_id (str | None): Session user id.
        users_collection (Collection): MongoDB collection handle.

    Returns:
        tuple[list[str], list[str]]: Liked ids and watchlist ids.
    """
    if not user_id:
        return [], []
    projection = {field: 1 for field in USER_SET_FIELDS.values()}
    user = require_user(user_id, users_collection, projection)
    return get_user_sets(user)


def resolve_set_field(set_name: str):
    field = USER_SET_FIELDS.get((set_name or "").strip().lower())
    if not field:
        raise ValidationError("Unsupported list, use liked or watchlist")
    return field


def add_to_user_set(users_collection: Collection, movies_collection: Collection, user_id: str, set_name: str, movie_id: str):
    """
    Add a movie to one of the user's sets with a single ``$addToSet``.

    Args:
        users_collection (Collection): Users collection.
        movies_collection (Collection): Movies collection, used to check the movie exists.
        user_id (str): Session user id.
        set_name (str): ``liked`` or ``watchlist``.
        movie_id (str): Movie to add.

    Returns:
        list[str]: The set after the update.
    """
    field = resolve_set_field(set_name)
    if not identifier_candidates(movie_id):
        raise ValidationError("movie_id is required")

    with store_operation("look up a movie"):
        movie = movies_collection.find_one(build_identifier_query(movie_id), {"_id": 1})
    if not movie:
        raise NotFoundError("Movie not found")

    with store_operation(f"update {field}"):
        updated = users_collection.find_one_and_update(
            build_identifier_query(user_id),
            {"$addToSet": {field: str(movie["_id"])}},
            projection={field: 1},
            return_document=ReturnDocument.AFTER,
        )
    if not updated:
        raise NotFoundError("User not found")

    logger.info("User %s added %s to %s", user_id, movie["_id"], field)
    return normalize_id_list(updated.get(field))


def remove_from_user_set(users_collection: Collection, user_id: str, set_name: str, movie_id: str):
    """
    Remove a movie from one of the user's sets with a single ``$pullAll`` over its id forms.

    Args:
        users_collection (Collection): Users collection.
        user_id (str): Session user id.
        set_name (str): ``liked`` or ``watchlist``.
        movie_id (str): Movie to remove.

    Returns:
        list[str]: The set after the update.
    """
    field = resolve_set_field(set_name)
    candidates = identifier_candidates(movie_id)
    if not candidates:
        raise ValidationError("movie_id is required")

    with store_operation(f"update {field}"):
        updated = users_collection.find_one_and_update(
            build_identifier_query(user_id),
            {"$pullAll": {field: candidates}},
            projection={field: 1},
            return_document=ReturnDocument.AFTER,
        )
    if not updated:
        raise NotFoundError("User not found")

    logger.info("User %s removed %s from %s", user_id, candidates[0], field)
    return normalize_id_list(updated.get(field))


def is_in_user_set(user_doc: dict | None, set_name: str, movie_id: str):
    """
    Check whether a movie belongs to one of the user's sets.

    Args:
        user_doc (dict | None): User document.
        set_name (str): ``liked`` or ``watchlist``.
        movie_id (str): Movie identifier.

    Returns:
        bool: True when the movie is in the set.
    """
    field = resolve_set_field(set_name)
    members = normalize_id_list((user_doc or {}).get(field))
    return str(movie_id).strip() in members
