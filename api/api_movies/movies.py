import logging
import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from pymongo import MongoClient
import redis

from aggregation_functions import (
    get_recommendations,
    get_top_directors,
    get_top_rated_by_genre,
    get_trending_movies,
    list_user_reviews,
)
from catalog_errors import CatalogError
from common_functions import build_cache_key, clamp, invalidate_cache_prefix, read_cached_json, safe_int, write_cached_json
from movies_functions import (
    MovieStatsUpdate,
    add_cast_members,
    add_review,
    annotate_movie_status,
    append_platforms,
    build_listing_filter,
    edit_review,
    fetch_movie,
    fetch_movies,
    fetch_movies_by_ids,
    get_movie_reviews,
    remove_platforms,
    search_movies,
    update_movie_stats,
)
from users_functions import (
    USER_SET_FIELDS,
    add_to_user_set,
    get_user_sets,
    remove_from_user_set,
    require_user,
    resolve_set_field,
    resolve_user_sets,
)

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = Flask(__name__)
app.json.sort_keys = False
CORS(app)

MONGO_TIMEOUT_MS = int(os.environ.get("MONGO_TIMEOUT_MS", 5000))
client = MongoClient(
    os.getenv("MONGO_URI", "mongodb://localhost:27017"),
    serverSelectionTimeoutMS=MONGO_TIMEOUT_MS,
    socketTimeoutMS=MONGO_TIMEOUT_MS,
)
db = client[os.getenv("MONGO_DB", "api_movies")]
movies_collection = db["movies"]
users_collection = db["users"]

r = redis.Redis(
    host=os.environ.get("REDIS_HOST", "localhost"),
    port=int(os.environ.get("REDIS_PORT", 6379)),
    db=int(os.environ.get("REDIS_DB", 0)),
    socket_timeout=float(os.environ.get("REDIS_TIMEOUT_SECONDS", 2)),
)

CACHE_TTL_SECONDS = int(os.environ.get("CACHE_TTL_SECONDS", 600))
TRENDING_CACHE_TTL_SECONDS = int(os.environ.get("TRENDING_CACHE_TTL_SECONDS", 60))
TRENDING_WINDOW_DAYS = int(os.environ.get("TRENDING_WINDOW_DAYS", 7))
MAX_TRENDING_WINDOW_DAYS = 365
RECOMMENDATION_LIMIT = int(os.environ.get("RECOMMENDATION_LIMIT", 10))
AGGREGATE_CACHE_PREFIX = "aggregates"


@app.errorhandler(CatalogError)
def handle_catalog_error(error: CatalogError):
    """
    Map catalog failures to JSON error responses.

    Args:
        error (CatalogError): Raised failure.

    Returns:
        Response: JSON payload with the failure's status code.
    """
    logger.info("%s %s -> %s: %s", request.method, request.path, error.status_code, error.message)
    return jsonify(error.to_payload()), error.status_code


def read_json_body():
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def invalidate_aggregates():
    invalidate_cache_prefix(r, f"{AGGREGATE_CACHE_PREFIX}:")


@app.route("/movies", methods=["GET"])
def list_movies():
    """
    Handle GET requests for the catalog, filtered by genre and minimum rating.

    Returns:
        Response: Movies annotated with the caller's liked and watchlist flags.
    """
    filter_query = build_listing_filter(request.args.get("genre"), request.args.get("min_rating"))
    movies = fetch_movies(movies_collection, filter_query)
    liked, watchlist = resolve_user_sets(request.args.get("user_id"), users_collection)
    return jsonify(annotate_movie_status(movies, liked, watchlist))


@app.route("/movies/search", methods=["GET"])
def search():
    """
    Handle GET requests for catalog search.

    Returns:
        Response: Exact genre matches then partial matches, annotated for the caller.
    """
    movies = search_movies(movies_collection, request.args.get("q"))
    liked, watchlist = resolve_user_sets(request.args.get("user_id"), users_collection)
    return jsonify(annotate_movie_status(movies, liked, watchlist))


@app.route("/movies/trending", methods=["GET"])
def trending():
    """
    Handle GET requests for the movies reviewed most in the trailing window.

    Returns:
        Response: Rows with movie id, title and review count.
    """
    days = clamp(safe_int(request.args.get("days"), TRENDING_WINDOW_DAYS), 1, MAX_TRENDING_WINDOW_DAYS)
    cache_key = build_cache_key(AGGREGATE_CACHE_PREFIX, "trending", days)
    cached = read_cached_json(r, cache_key)
    if cached is not None:
        return jsonify(cached)

    items = get_trending_movies(movies_collection, window_days=days)
    write_cached_json(r, cache_key, TRENDING_CACHE_TTL_SECONDS, items)
    return jsonify(items)


@app.route("/movies/top/<genre>", methods=["GET"])
def top_rated_by_genre(genre: str):
    """
    Handle GET requests for the best rated movies of a genre.

    Args:
        genre (str): Genre from the path segment.

    Returns:
        Response: Rows with movie id, title and average rating.
    """
    cache_key = build_cache_key(AGGREGATE_CACHE_PREFIX, "top", genre)
    cached = read_cached_json(r, cache_key)
    if cached is not None:
        return jsonify(cached)

    items = get_top_rated_by_genre(movies_collection, genre)
    write_cached_json(r, cache_key, CACHE_TTL_SECONDS, items)
    return jsonify(items)


@app.route("/movies/directors/top", methods=["GET"])
def top_directors():
    """
    Handle GET requests for the best rated directors.

    Returns:
        Response: Rows with director and average rating.
    """
    cache_key = build_cache_key(AGGREGATE_CACHE_PREFIX, "directors")
    cached = read_cached_json(r, cache_key)
    if cached is not None:
        return jsonify(cached)

    items = get_top_directors(movies_collection)
    write_cached_json(r, cache_key, CACHE_TTL_SECONDS, items)
    return jsonify(items)


@app.route("/movies/<movie_id>", methods=["GET"])
def get_movie_detail(movie_id: str):
    return jsonify(fetch_movie(movies_collection, movie_id))


@app.route("/movies/<movie_id>/reviews", methods=["GET"])
def get_reviews(movie_id: str):
    return jsonify(get_movie_reviews(movies_collection, users_collection, movie_id))


@app.route("/movies/<movie_id>/reviews", methods=["POST"])
def post_review(movie_id: str):
    """
    Handle POST requests that add the caller's review to a movie.

    Args:
        movie_id (str): Identifier from the path segment.

    Returns:
        Response: The movie's reviews, 201 on success.
    """
    payload = read_json_body()
    reviews = add_review(
        movies_collection,
        users_collection,
        movie_id,
        payload.get("user_id"),
        payload.get("rating"),
        payload.get("comment"),
    )
    invalidate_aggregates()
    return jsonify({"message": "Review added successfully", "reviews": reviews}), 201


@app.route("/movies/<movie_id>/reviews", methods=["PATCH"])
def patch_review(movie_id: str):
    """
    Handle PATCH requests that edit the caller's review in place.

    Args:
        movie_id (str): Identifier from the path segment.

    Returns:
        Response: The movie's reviews after the edit.
    """
    payload = read_json_body()
    reviews = edit_review(
        movies_collection,
        users_collection,
        movie_id,
        payload.get("user_id"),
        rating=payload.get("rating"),
        comment=payload.get("comment"),
    )
    invalidate_aggregates()
    return jsonify(reviews)


@app.route("/movies/<movie_id>/cast", methods=["POST"])
def post_cast(movie_id: str):
    payload = read_json_body()
    return jsonify(add_cast_members(movies_collection, movie_id, payload.get("cast")))


@app.route("/movies/<movie_id>/platforms", methods=["POST"])
def post_platforms(movie_id: str):
    payload = read_json_body()
    return jsonify(append_platforms(movies_collection, movie_id, payload.get("platforms")))


@app.route("/movies/<movie_id>/platforms", methods=["DELETE"])
def delete_platforms(movie_id: str):
    payload = read_json_body()
    remove_all = bool(payload.get("remove_all"))
    return jsonify(remove_platforms(movies_collection, movie_id, payload.get("platforms"), remove_all))


@app.route("/movies/<movie_id>/stats", methods=["PATCH"])
def patch_stats(movie_id: str):
    """
    Handle PATCH requests applying numeric and plain field changes in one update.

    Args:
        movie_id (str): Identifier from the path segment.

    Returns:
        Response: The movie after the update, without its reviews.
    """
    stats_update = MovieStatsUpdate.from_payload(read_json_body())
    movie = update_movie_stats(movies_collection, movie_id, stats_update)
    invalidate_aggregates()
    return jsonify(movie)


@app.route("/users/<user_id>/recommendations", methods=["GET"])
def recommendations(user_id: str):
    limit = clamp(safe_int(request.args.get("limit"), RECOMMENDATION_LIMIT), 1, RECOMMENDATION_LIMIT)
    return jsonify(get_recommendations(movies_collection, users_collection, user_id, limit))


@app.route("/users/<user_id>/reviews", methods=["GET"])
def user_reviews(user_id: str):
    return jsonify(list_user_reviews(movies_collection, users_collection, user_id))


@app.route("/users/<user_id>/<set_name>", methods=["GET"])
def get_user_set_movies(user_id: str, set_name: str):
    """
    Handle GET requests for the movies in a user's liked list or watchlist.

    Args:
        user_id (str): User identifier from the path.
        set_name (str): ``liked`` or ``watchlist``.

    Returns:
        Response: Movies in list order, annotated with both flags.
    """
    field = resolve_set_field(set_name)
    user = require_user(user_id, users_collection, {name: 1 for name in USER_SET_FIELDS.values()})
    liked, watchlist = get_user_sets(user)
    members = liked if field == USER_SET_FIELDS["liked"] else watchlist
    movies = fetch_movies_by_ids(movies_collection, members)
    return jsonify(annotate_movie_status(movies, liked, watchlist))


@app.route("/users/<user_id>/<set_name>", methods=["POST"])
def add_user_set_movie(user_id: str, set_name: str):
    payload = read_json_body()
    members = add_to_user_set(users_collection, movies_collection, user_id, set_name, payload.get("movie_id"))
    return jsonify({resolve_set_field(set_name): members})


@app.route("/users/<user_id>/<set_name>", methods=["DELETE"])
def remove_user_set_movie(user_id: str, set_name: str):
    payload = read_json_body()
    movie_id = payload.get("movie_id") or request.args.get("movie_id")
    members = remove_from_user_set(users_collection, user_id, set_name, movie_id)
    return jsonify({resolve_set_field(set_name): members})


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5001, debug=True)
