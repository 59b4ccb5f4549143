import logging
import re
from dataclasses import dataclass, field
from numbers import Number

from pymongo import ReturnDocument
from pymongo.collection import Collection

from catalog_errors import ConflictError, NotFoundError, ValidationError, store_operation
from common_functions import (
    build_identifier_query,
    expand_identifiers,
    identifier_candidates,
    serialize_document,
    serialize_value,
    utc_now,
)
from users_functions import require_user

logger = logging.getLogger(__name__)

EXACT_MATCH_FIELD = "genres"
FUZZY_MATCH_FIELDS = ("title", "director", "cast", "genres")
PLATFORM_LIMIT = 5
MIN_RATING = 1
MAX_RATING = 5
PROTECTED_FIELDS = {"_id", "reviews"}


def fetch_movies(collection: Collection, filter_query: dict | None = None, projection: dict | None = None):
    """
    Retrieve and serialize movies from MongoDB.

    Args:
        collection (Collection): PyMongo collection handle.
        filter_query (dict | None): Optional MongoDB filter.
        projection (dict | None): Optional projection.

    Returns:
        list[dict]: Serialized documents in store order.
    """
    with store_operation("list movies"):
        items = list(collection.find(filter_query or {}, projection))
    return [serialize_document(item) for item in items]


def fetch_movie(collection: Collection, movie_id: str, projection: dict | None = None):
    """
    Fetch a single movie by any stored form of its id.

    Args:
        collection (Collection): PyMongo collection handle.
        movie_id (str): Identifier from the client.
        projection (dict | None): Optional projection.

    Returns:
        dict: Serialized movie.
    """
    if not identifier_candidates(movie_id):
        raise ValidationError("movie_id is required")
    with store_operation("fetch a movie"):
        document = collection.find_one(build_identifier_query(movie_id), projection)
    if not document:
        raise NotFoundError("Movie not found")
    return serialize_document(document)


def fetch_movies_by_ids(collection: Collection, movie_ids: list[str]):
    """
    Fetch movies for a list of ids, keeping the order of the list.

    Ids that no longer resolve to a movie are skipped.

    Args:
        collection (Collection): PyMongo collection handle.
        movie_ids (list[str]): Identifiers in display order.

    Returns:
        list[dict]: Serialized movies.
    """
    if not movie_ids:
        return []
    documents = fetch_movies(collection, {"_id": {"$in": expand_identifiers(movie_ids)}})
    lookup = {doc["_id"]: doc for doc in documents}
    return [lookup[movie_id] for movie_id in movie_ids if movie_id in lookup]


def build_listing_filter(genre: str | None = None, min_rating=None):
    """
    Build the filter used by the catalog listing.

    Args:
        genre (str | None): Genre every result must carry.
        min_rating (Any): Results need at least one review rated this high.

    Returns:
        dict: MongoDB filter.
    """
    filter_query = {}
    if genre:
        filter_query["genres"] = genre.strip()
    if min_rating not in (None, ""):
        try:
            threshold = float(min_rating)
        except (TypeError, ValueError):
            raise ValidationError("min_rating must be a number")
        filter_query["reviews.rating"] = {"$gte": threshold}
    return filter_query


def parse_year_query(query: str):
    """
    Return the leading integer of the query as a year.

    Trailing text is ignored, so "1999 films" still searches 1999.

    Args:
        query (str): Search text.

    Returns:
        int | None: Parsed year or None.
    """
    match = re.match(r"[+-]?\d+", query.strip())
    if not match:
        return None
    return int(match.group())


def build_fuzzy_query(query: str):
    """
    Build the case-insensitive substring query used for partial matches.

    Args:
        query (str): Search text, matched literally.

    Returns:
        dict: ``$or`` filter over the searchable fields.
    """
    regex = {"$regex": re.escape(query), "$options": "i"}
    clauses = [{name: regex} for name in FUZZY_MATCH_FIELDS]
    year = parse_year_query(query)
    if year is not None:
        clauses.append({"year": year})
    return {"$or": clauses}


def merge_search_results(exact_matches: list[dict], fuzzy_matches: list[dict]):
    """
    Merge two result lists by identity.

    Exact matches come first, each movie appears once at its first position.

    Args:
        exact_matches (list[dict]): Results of the exact lookup.
        fuzzy_matches (list[dict]): Results of the partial lookup.

    Returns:
        list[dict]: Deduplicated results.
    """
    merged = []
    seen = set()
    for doc in [*exact_matches, *fuzzy_matches]:
        key = str(doc.get("_id"))
        if key in seen:
            continue
        seen.add(key)
        merged.append(doc)
    return merged


def search_movies(collection: Collection, query):
    """
    Search the catalog with an exact genre lookup boosted ahead of partial matches.

    Args:
        collection (Collection): Movies collection.
        query (Any): Search text. Anything but a non-blank string yields no results.

    Returns:
        list[dict]: Serialized, deduplicated movies.
    """
    if not isinstance(query, str) or not query.strip():
        return []
    text = query.strip()

    exact_matches = fetch_movies(collection, {EXACT_MATCH_FIELD: text})
    fuzzy_matches = fetch_movies(collection, build_fuzzy_query(text))
    merged = merge_search_results(exact_matches, fuzzy_matches)
    logger.debug("search %r: %d exact, %d partial, %d merged", text, len(exact_matches), len(fuzzy_matches), len(merged))
    return merged


def annotate_movie_status(movies: list[dict], liked_ids=None, watchlist_ids=None):
    """
    Attach ``liked`` and ``inWatchlist`` flags to each movie.

    Args:
        movies (list[dict]): Serialized movies.
        liked_ids (Iterable | None): Movie ids the user liked.
        watchlist_ids (Iterable | None): Movie ids on the user's watchlist.

    Returns:
        list[dict]: New dictionaries, the inputs are left untouched.
    """
    liked = {str(value) for value in liked_ids or ()}
    watchlist = {str(value) for value in watchlist_ids or ()}
    annotated = []
    for movie in movies:
        movie_id = str(movie.get("_id"))
        annotated.append({**movie, "liked": movie_id in liked, "inWatchlist": movie_id in watchlist})
    return annotated


def validate_rating(value):
    """
    Validate a review rating.

    Args:
        value (Any): Raw rating from the client.

    Returns:
        int: Rating between 1 and 5.
    """
    message = f"Rating must be an integer between {MIN_RATING} and {MAX_RATING}"
    if isinstance(value, bool) or value is None:
        raise ValidationError(message)
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(message)
    if not number.is_integer():
        raise ValidationError(message)
    rating = int(number)
    if rating < MIN_RATING or rating > MAX_RATING:
        raise ValidationError(message)
    return rating


def validate_comment(value):
    """
    Validate a review comment.

    Args:
        value (Any): Raw comment from the client.

    Returns:
        str: Stripped, non-empty comment.
    """
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("Comment cannot be empty")
    return value.strip()


def find_user_review(reviews: list | None, reviewer_id: str):
    for review in reviews or []:
        if isinstance(review, dict) and str(review.get("user")) == reviewer_id:
            return review
    return None


def add_review(movies_collection: Collection, users_collection: Collection, movie_id: str, user_id: str, rating, comment):
    """
    Append a review to a movie.

    The append only happens when the user has no review on the movie yet, checked
    and written in a single conditional update.

    Args:
        movies_collection (Collection): Movies collection.
        users_collection (Collection): Users collection.
        movie_id (str): Reviewed movie.
        user_id (str): Session user id.
        rating (Any): Rating between 1 and 5.
        comment (Any): Non-empty comment.

    Returns:
        list[dict]: The movie's reviews after the append.
    """
    rating_value = validate_rating(rating)
    comment_text = validate_comment(comment)
    candidates = identifier_candidates(movie_id)
    if not candidates:
        raise ValidationError("movie_id is required")

    user = require_user(user_id, users_collection, {"_id": 1})
    reviewer_id = str(user["_id"])
    review = {
        "user": reviewer_id,
        "rating": rating_value,
        "comment": comment_text,
        "date": utc_now(),
    }

    with store_operation("add a review"):
        updated = movies_collection.find_one_and_update(
            {"_id": {"$in": candidates}, "reviews.user": {"$ne": reviewer_id}},
            {"$push": {"reviews": review}},
            projection={"reviews": 1},
            return_document=ReturnDocument.AFTER,
        )
        if updated:
            logger.info("User %s reviewed movie %s", reviewer_id, updated["_id"])
            return serialize_value(updated.get("reviews") or [])
        movie = movies_collection.find_one({"_id": {"$in": candidates}}, {"reviews": 1})

    if not movie:
        raise NotFoundError("Movie not found")
    existing = find_user_review(movie.get("reviews"), reviewer_id)
    raise ConflictError("You have already reviewed this movie", serialize_value(existing))


def edit_review(movies_collection: Collection, users_collection: Collection, movie_id: str, user_id: str, rating=None, comment=None):
    """
    Replace the rating and/or comment of the user's review in place.

    Args:
        movies_collection (Collection): Movies collection.
        users_collection (Collection): Users collection.
        movie_id (str): Reviewed movie.
        user_id (str): Session user id.
        rating (Any): New rating, optional.
        comment (Any): New comment, optional.

    Returns:
        list[dict]: The movie's reviews after the edit.
    """
    if rating is None and comment is None:
        raise ValidationError("Provide a rating or a comment")
    updates = {"reviews.$.updated_at": utc_now()}
    if rating is not None:
        updates["reviews.$.rating"] = validate_rating(rating)
    if comment is not None:
        updates["reviews.$.comment"] = validate_comment(comment)

    candidates = identifier_candidates(movie_id)
    if not candidates:
        raise ValidationError("movie_id is required")
    user = require_user(user_id, users_collection, {"_id": 1})
    reviewer_id = str(user["_id"])

    with store_operation("edit a review"):
        updated = movies_collection.find_one_and_update(
            {"_id": {"$in": candidates}, "reviews.user": reviewer_id},
            {"$set": updates},
            projection={"reviews": 1},
            return_document=ReturnDocument.AFTER,
        )
    if not updated:
        raise NotFoundError("Review not found")
    return serialize_value(updated.get("reviews") or [])


def get_movie_reviews(movies_collection: Collection, users_collection: Collection, movie_id: str):
    """
    List a movie's reviews with the reviewer's username resolved for display.

    Reviews whose ``user`` does not resolve to an account keep the stored value as display name.

    Args:
        movies_collection (Collection): Movies collection.
        users_collection (Collection): Users collection.
        movie_id (str): Movie identifier.

    Returns:
        list[dict]: Reviews with an added ``username`` field.
    """
    movie = fetch_movie(movies_collection, movie_id, {"reviews": 1})
    reviews = [review for review in movie.get("reviews") or [] if isinstance(review, dict)]
    reviewer_ids = {str(review.get("user")) for review in reviews if review.get("user")}

    names = {}
    if reviewer_ids:
        with store_operation("resolve reviewer names"):
            cursor = users_collection.find({"_id": {"$in": expand_identifiers(list(reviewer_ids))}}, {"username": 1})
            names = {str(doc["_id"]): doc.get("username") for doc in cursor}

    return [{**review, "username": names.get(str(review.get("user")), review.get("user"))} for review in reviews]


def clean_name_list(values, label: str):
    """
    Validate a list of names sent by the client.

    Args:
        values (Any): Raw list.
        label (str): Field name used in the error message.

    Returns:
        list[str]: Stripped, non-empty names.
    """
    if isinstance(values, str):
        values = [values]
    if not isinstance(values, list):
        raise ValidationError(f"{label} must be a list of strings")
    names = [value.strip() for value in values if isinstance(value, str) and value.strip()]
    if not names:
        raise ValidationError(f"{label} must contain at least one name")
    return names


def update_movie_fields(collection: Collection, movie_id: str, update: dict, projection: dict | None = None):
    """
    Apply one update document to a movie atomically.

    Args:
        collection (Collection): Movies collection.
        movie_id (str): Movie identifier.
        update (dict): MongoDB update document.
        projection (dict | None): Fields to return.

    Returns:
        dict: Serialized movie after the update.
    """
    if not identifier_candidates(movie_id):
        raise ValidationError("movie_id is required")
    with store_operation("update a movie"):
        updated = collection.find_one_and_update(
            build_identifier_query(movie_id),
            update,
            projection=projection,
            return_document=ReturnDocument.AFTER,
        )
    if not updated:
        raise NotFoundError("Movie not found")
    return serialize_document(updated)


def add_cast_members(collection: Collection, movie_id: str, cast):
    names = clean_name_list(cast, "cast")
    movie = update_movie_fields(collection, movie_id, {"$addToSet": {"cast": {"$each": names}}}, {"cast": 1})
    return movie.get("cast") or []


def build_platform_push(platforms: list[str], limit: int = PLATFORM_LIMIT):
    """
    Build the capped append used for streaming platforms.

    Args:
        platforms (list[str]): Platforms to append.
        limit (int): Maximum number of platforms kept.

    Returns:
        dict: ``$push`` update keeping the list sorted and capped.
    """
    return {
        "$push": {
            "platforms": {
                "$each": platforms,
                "$sort": 1,
                "$slice": -limit,
            }
        }
    }


def build_platform_removal(platforms: list[str], remove_all: bool = False):
    """
    Build the update removing platforms.

    Args:
        platforms (list[str]): Platforms sent by the client.
        remove_all (bool): Remove every listed platform instead of the first only.

    Returns:
        dict: ``$pullAll`` or ``$pull`` update.
    """
    if remove_all:
        return {"$pullAll": {"platforms": platforms}}
    return {"$pull": {"platforms": platforms[0]}}


def append_platforms(collection: Collection, movie_id: str, platforms):
    names = clean_name_list(platforms, "platforms")
    movie = update_movie_fields(collection, movie_id, build_platform_push(names), {"platforms": 1})
    return movie.get("platforms") or []


def remove_platforms(collection: Collection, movie_id: str, platforms, remove_all: bool = False):
    names = clean_name_list(platforms, "platforms")
    movie = update_movie_fields(collection, movie_id, build_platform_removal(names, remove_all), {"platforms": 1})
    return movie.get("platforms") or []


@dataclass
class MovieStatsUpdate:
    """
    Numeric and plain field changes applied to a movie in one atomic update.

    Every operation is optional. ``clamp_min`` and ``clamp_max`` keep the smaller
    or larger of the stored and given values.
    """

    increment: dict = field(default_factory=dict)
    multiply: dict = field(default_factory=dict)
    clamp_min: dict = field(default_factory=dict)
    clamp_max: dict = field(default_factory=dict)
    set_fields: dict = field(default_factory=dict)
    unset_fields: list = field(default_factory=list)

    OPERATORS = (
        ("increment", "$inc"),
        ("multiply", "$mul"),
        ("clamp_min", "$min"),
        ("clamp_max", "$max"),
        ("set_fields", "$set"),
    )
    NUMERIC = {"increment", "multiply"}

    @classmethod
    def from_payload(cls, payload: dict | None):
        """
        Build the update from a request body.

        Args:
            payload (dict | None): Body with any of the operation keys.

        Returns:
            MovieStatsUpdate: Parsed update.
        """
        if not isinstance(payload, dict):
            raise ValidationError("Stats update must be an object")
        values = {}
        for name, _operator in cls.OPERATORS:
            raw = payload.get(name)
            if raw is None:
                continue
            if not isinstance(raw, dict):
                raise ValidationError(f"{name} must be an object")
            values[name] = dict(raw)
        raw_unset = payload.get("unset_fields")
        if raw_unset is not None:
            if isinstance(raw_unset, str):
                raw_unset = [raw_unset]
            if not isinstance(raw_unset, list) or not all(isinstance(item, str) for item in raw_unset):
                raise ValidationError("unset_fields must be a list of field names")
            values["unset_fields"] = list(raw_unset)
        return cls(**values)

    def is_empty(self):
        return not any(getattr(self, name) for name, _operator in self.OPERATORS) and not self.unset_fields

    def to_update_document(self):
        """
        Translate the configured operations into a MongoDB update document.

        Returns:
            dict: Update with one key per configured operator.
        """
        if self.is_empty():
            raise ValidationError("Stats update needs at least one operation")

        update = {}
        touched = set()
        for name, operator in self.OPERATORS:
            values = getattr(self, name)
            if not values:
                continue
            for key, value in values.items():
                self._check_field(key, touched)
                if name in self.NUMERIC and (isinstance(value, bool) or not isinstance(value, Number)):
                    raise ValidationError(f"{name}.{key} must be a number")
            update[operator] = dict(values)
        if self.unset_fields:
            for key in self.unset_fields:
                self._check_field(key, touched)
            update["$unset"] = {key: "" for key in self.unset_fields}
        return update

    @staticmethod
    def _check_field(key: str, touched: set):
        root = key.split(".", 1)[0]
        if not key or root in PROTECTED_FIELDS:
            raise ValidationError(f"Field {key!r} cannot be updated here")
        for other in touched:
            if key == other or key.startswith(f"{other}.") or other.startswith(f"{key}."):
                raise ValidationError(f"Field {key!r} conflicts with {other!r} in another operation")
        touched.add(key)


def update_movie_stats(collection: Collection, movie_id: str, stats_update: MovieStatsUpdate):
    movie = update_movie_fields(collection, movie_id, stats_update.to_update_document())
    movie.pop("reviews", None)
    return movie
