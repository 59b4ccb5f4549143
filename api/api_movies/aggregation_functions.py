import logging
from datetime import datetime, timedelta

from pymongo.collection import Collection

from catalog_errors import store_operation
from common_functions import expand_identifiers, serialize_document, serialize_value, utc_now
from users_functions import USER_SET_FIELDS, get_user_sets, require_user

logger = logging.getLogger(__name__)

DEFAULT_TRENDING_WINDOW_DAYS = 7
TRENDING_LIMIT = 10
TOP_GENRE_LIMIT = 5
TOP_DIRECTORS_LIMIT = 3
RECOMMENDATION_LIMIT = 10


def run_pipeline(collection: Collection, pipeline: list[dict], description: str):
    with store_operation(description):
        return list(collection.aggregate(pipeline))


def build_trending_pipeline(since: datetime, limit: int = TRENDING_LIMIT):
    """
    Create the pipeline counting reviews posted since a point in time.

    Ties keep insertion order through the ObjectId ``_id``.

    Args:
        since (datetime): Start of the window, in UTC.
        limit (int): Maximum number of movies.

    Returns:
        list[dict]: Pipeline definition for MongoDB.
    """
    return [
        {"$unwind": "$reviews"},
        {"$match": {"reviews.date": {"$gte": since}}},
        {
            "$group": {
                "_id": "$_id",
                "count": {"$sum": 1},
                "title": {"$first": "$title"},
            }
        },
        {"$sort": {"count": -1, "_id": 1}},
        {"$limit": limit},
    ]


def build_top_genre_pipeline(genre: str, limit: int = TOP_GENRE_LIMIT):
    """
    Create the pipeline ranking a genre's movies by average review rating.

    Args:
        genre (str): Genre the movies must carry.
        limit (int): Maximum number of movies.

    Returns:
        list[dict]: Pipeline definition for MongoDB.
    """
    return [
        {"$match": {"genres": genre}},
        {"$unwind": "$reviews"},
        {
            "$group": {
                "_id": "$_id",
                "avg_rating": {"$avg": "$reviews.rating"},
                "title": {"$first": "$title"},
            }
        },
        {"$sort": {"avg_rating": -1, "_id": 1}},
        {"$limit": limit},
    ]


def build_top_directors_pipeline(limit: int = TOP_DIRECTORS_LIMIT):
    """
    Create the pipeline ranking directors by the mean of their movies' averages.

    Each movie weighs the same whatever its number of reviews. Ties go to the
    director whose earliest movie was inserted first.

    Args:
        limit (int): Maximum number of directors.

    Returns:
        list[dict]: Pipeline definition for MongoDB.
    """
    return [
        {"$match": {"director": {"$nin": [None, ""]}}},
        {"$unwind": "$reviews"},
        {
            "$group": {
                "_id": {"director": "$director", "movie": "$_id"},
                "movie_avg": {"$avg": "$reviews.rating"},
            }
        },
        {
            "$group": {
                "_id": "$_id.director",
                "avg_rating": {"$avg": "$movie_avg"},
                "first_movie": {"$min": "$_id.movie"},
            }
        },
        {"$sort": {"avg_rating": -1, "first_movie": 1}},
        {"$limit": limit},
    ]


def get_trending_movies(collection: Collection, window_days: int = DEFAULT_TRENDING_WINDOW_DAYS, limit: int = TRENDING_LIMIT, now: datetime | None = None):
    """
    List the movies with the most reviews inside the trailing window.

    Args:
        collection (Collection): Movies collection.
        window_days (int): Window length in days.
        limit (int): Maximum number of movies.
        now (datetime | None): End of the window, defaults to the current UTC time.

    Returns:
        list[dict]: Rows with ``_id``, ``title`` and ``count``.
    """
    since = (now or utc_now()) - timedelta(days=window_days)
    rows = run_pipeline(collection, build_trending_pipeline(since, limit), "compute trending movies")
    return [
        {"_id": serialize_value(row["_id"]), "title": row.get("title"), "count": row["count"]}
        for row in rows
    ]


def get_top_rated_by_genre(collection: Collection, genre: str, limit: int = TOP_GENRE_LIMIT):
    """
    List the best rated movies of a genre.

    Args:
        collection (Collection): Movies collection.
        genre (str): Genre to rank.
        limit (int): Maximum number of movies.

    Returns:
        list[dict]: Rows with ``_id``, ``title`` and ``avg_rating``.
    """
    rows = run_pipeline(collection, build_top_genre_pipeline(genre, limit), "compute top rated movies")
    return [
        {"_id": serialize_value(row["_id"]), "title": row.get("title"), "avg_rating": float(row["avg_rating"])}
        for row in rows
        if row.get("avg_rating") is not None
    ]


def get_top_directors(collection: Collection, limit: int = TOP_DIRECTORS_LIMIT):
    """
    List the directors with the best average of movie averages.

    Args:
        collection (Collection): Movies collection.
        limit (int): Maximum number of directors.

    Returns:
        list[dict]: Rows with ``director`` and ``avg_rating``.
    """
    rows = run_pipeline(collection, build_top_directors_pipeline(limit), "compute top directors")
    return [
        {"director": row["_id"], "avg_rating": float(row["avg_rating"])}
        for row in rows
        if row.get("avg_rating") is not None
    ]


def average_rating(doc: dict):
    """
    Compute a movie's average review rating.

    Args:
        doc (dict): Movie document.

    Returns:
        float | None: Mean rating, or None when the movie has no rated review.
    """
    ratings = [
        review.get("rating")
        for review in doc.get("reviews") or []
        if isinstance(review, dict) and isinstance(review.get("rating"), (int, float)) and not isinstance(review.get("rating"), bool)
    ]
    if not ratings:
        return None
    return sum(ratings) / len(ratings)


def collect_genres(documents: list[dict]):
    genres = []
    seen = set()
    for doc in documents:
        for genre in doc.get("genres") or []:
            if not genre or genre in seen:
                continue
            seen.add(genre)
            genres.append(genre)
    return genres


def get_recommendations(movies_collection: Collection, users_collection: Collection, user_id: str, limit: int = RECOMMENDATION_LIMIT):
    """
    Recommend movies sharing a genre with the user's watchlist.

    Watchlisted movies are never recommended. Candidates are ranked by average
    rating, unreviewed ones last.

    Args:
        movies_collection (Collection): Movies collection.
        users_collection (Collection): Users collection.
        user_id (str): Session user id.
        limit (int): Maximum number of movies.

    Returns:
        list[dict]: Serialized movies with an ``avg_rating`` field.
    """
    user = require_user(user_id, users_collection, {USER_SET_FIELDS["watchlist"]: 1})
    _liked, watchlist = get_user_sets(user)
    if not watchlist:
        return []

    with store_operation("load the watchlist"):
        watched = list(movies_collection.find({"_id": {"$in": expand_identifiers(watchlist)}}, {"genres": 1}))
    genres = collect_genres(watched)
    if not genres:
        return []

    excluded = expand_identifiers(watchlist) + [doc["_id"] for doc in watched]
    with store_operation("load recommendation candidates"):
        candidates = list(movies_collection.find({"genres": {"$in": genres}, "_id": {"$nin": excluded}}))

    unique = []
    seen = set()
    for doc in candidates:
        key = str(doc["_id"])
        if key in seen:
            continue
        seen.add(key)
        unique.append((doc, average_rating(doc)))

    ranked = sorted(unique, key=lambda item: (item[1] is None, -(item[1] or 0.0)))
    logger.debug("recommendations for %s: %d candidates over %d genres", user_id, len(unique), len(genres))
    return [{**serialize_document(doc), "avg_rating": rating} for doc, rating in ranked[:limit]]


def list_user_reviews(movies_collection: Collection, users_collection: Collection, user_id: str):
    """
    List every review a user wrote, newest first.

    Args:
        movies_collection (Collection): Movies collection.
        users_collection (Collection): Users collection.
        user_id (str): Session user id.

    Returns:
        list[dict]: Rows with ``movie_id``, ``title``, ``rating``, ``comment`` and ``date``.
    """
    user = require_user(user_id, users_collection, {"_id": 1})
    reviewer_id = str(user["_id"])
    pipeline = [
        {"$match": {"reviews.user": reviewer_id}},
        {"$unwind": "$reviews"},
        {"$match": {"reviews.user": reviewer_id}},
        {"$sort": {"reviews.date": -1}},
    ]
    rows = run_pipeline(movies_collection, pipeline, "list user reviews")
    return [
        serialize_value(
            {
                "movie_id": row["_id"],
                "title": row.get("title"),
                "rating": row["reviews"].get("rating"),
                "comment": row["reviews"].get("comment"),
                "date": row["reviews"].get("date"),
            }
        )
        for row in rows
    ]
