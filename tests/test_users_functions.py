import pytest

from catalog_errors import NotFoundError, ValidationError
from users_functions import (
    add_to_user_set,
    find_user,
    get_user_sets,
    is_in_user_set,
    remove_from_user_set,
    resolve_user_sets,
)


def test_find_user_matches_ids_only(insert_user, users_collection):
    user = insert_user("Carla")
    users_collection.insert_one({"_id": "legacy-7", "username": "dora"})

    assert find_user(str(user["_id"]), users_collection)["username"] == "Carla"
    assert find_user("legacy-7", users_collection)["username"] == "dora"
    assert find_user("Carla", users_collection) is None
    assert find_user("", users_collection) is None
    assert find_user(None, users_collection) is None


def test_like_adds_canonical_id_once(insert_movie, insert_user, movies_collection, users_collection):
    movie = insert_movie("Alien")
    user = insert_user("ana")

    first = add_to_user_set(users_collection, movies_collection, str(user["_id"]), "liked", str(movie["_id"]))
    second = add_to_user_set(users_collection, movies_collection, str(user["_id"]), "liked", str(movie["_id"]))

    assert first == [str(movie["_id"])]
    assert second == [str(movie["_id"])]
    stored = users_collection.find_one({"_id": user["_id"]})
    assert stored["liked_movies"] == [str(movie["_id"])]


def test_watchlist_add_and_remove(insert_movie, insert_user, movies_collection, users_collection):
    alien = insert_movie("Alien")
    aliens = insert_movie("Aliens")
    user = insert_user("ana", watchlist=[alien["_id"]])

    added = add_to_user_set(users_collection, movies_collection, str(user["_id"]), "watchlist", str(aliens["_id"]))
    removed = remove_from_user_set(users_collection, str(user["_id"]), "watchlist", str(alien["_id"]))

    assert added == [str(alien["_id"]), str(aliens["_id"])]
    assert removed == [str(aliens["_id"])]


def test_remove_also_drops_ids_stored_as_object_ids(insert_movie, users_collection):
    movie = insert_movie("Alien")
    users_collection.insert_one({"_id": "u1", "username": "old", "liked_movies": [movie["_id"]]})

    assert remove_from_user_set(users_collection, "u1", "liked", str(movie["_id"])) == []


def test_removing_absent_movie_is_a_no_op(insert_user, users_collection):
    user = insert_user("ana", liked=["m1"])

    assert remove_from_user_set(users_collection, str(user["_id"]), "liked", "m2") == ["m1"]


def test_like_requires_existing_movie(insert_user, movies_collection, users_collection):
    user = insert_user("ana")

    with pytest.raises(NotFoundError):
        add_to_user_set(users_collection, movies_collection, str(user["_id"]), "liked", "64b000000000000000000000")


def test_set_changes_for_unknown_user_are_not_found(insert_movie, movies_collection, users_collection):
    movie = insert_movie("Alien")

    with pytest.raises(NotFoundError):
        add_to_user_set(users_collection, movies_collection, "ghost", "liked", str(movie["_id"]))
    with pytest.raises(NotFoundError):
        remove_from_user_set(users_collection, "ghost", "watchlist", str(movie["_id"]))


def test_unsupported_set_and_missing_movie_id_are_rejected(insert_user, movies_collection, users_collection):
    user = insert_user("ana")

    with pytest.raises(ValidationError):
        add_to_user_set(users_collection, movies_collection, str(user["_id"]), "favorites", "m1")
    with pytest.raises(ValidationError):
        remove_from_user_set(users_collection, str(user["_id"]), "liked", "  ")


def test_user_sets_tolerate_missing_fields():
    assert get_user_sets({"_id": "u1"}) == ([], [])
    assert get_user_sets(None) == ([], [])
    assert get_user_sets({"liked_movies": ["a", "a", None], "watchlist": "bad"}) == (["a"], [])


def test_resolve_user_sets_for_anonymous_and_unknown_callers(insert_user, users_collection):
    user = insert_user("ana", liked=["m1"], watchlist=["m2"])

    assert resolve_user_sets(None, users_collection) == ([], [])
    assert resolve_user_sets(str(user["_id"]), users_collection) == (["m1"], ["m2"])
    with pytest.raises(NotFoundError):
        resolve_user_sets("ghost", users_collection)


def test_membership_check():
    user = {"liked_movies": ["m1"], "watchlist": ["m2"]}

    assert is_in_user_set(user, "liked", "m1")
    assert not is_in_user_set(user, "liked", "m2")
    assert is_in_user_set(user, "watchlist", "m2")
    assert not is_in_user_set(None, "watchlist", "m2")
