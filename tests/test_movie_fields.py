import pytest

from catalog_errors import NotFoundError, ValidationError
from movies_functions import (
    MovieStatsUpdate,
    add_cast_members,
    build_listing_filter,
    build_platform_push,
    build_platform_removal,
    fetch_movie,
    fetch_movies,
    fetch_movies_by_ids,
    remove_platforms,
    update_movie_stats,
)


def test_cast_members_are_added_without_duplicates(insert_movie, movies_collection):
    movie = insert_movie("Heat", cast=["Al Pacino"])

    cast = add_cast_members(movies_collection, str(movie["_id"]), ["Robert De Niro", "Al Pacino", "Robert De Niro"])

    assert cast == ["Al Pacino", "Robert De Niro"]


def test_cast_requires_names(insert_movie, movies_collection):
    movie = insert_movie("Heat")

    with pytest.raises(ValidationError):
        add_cast_members(movies_collection, str(movie["_id"]), [])
    with pytest.raises(ValidationError):
        add_cast_members(movies_collection, str(movie["_id"]), {"name": "Al"})


def test_cast_on_missing_movie_is_not_found(movies_collection):
    with pytest.raises(NotFoundError):
        add_cast_members(movies_collection, "missing", ["Someone"])


def test_platform_push_is_sorted_and_capped():
    assert build_platform_push(["Netflix", "Hulu"]) == {
        "$push": {"platforms": {"$each": ["Netflix", "Hulu"], "$sort": 1, "$slice": -5}}
    }
    assert build_platform_push(["Max"], limit=2)["$push"]["platforms"]["$slice"] == -2


def test_platform_removal_pulls_first_or_all():
    assert build_platform_removal(["Hulu", "Max"]) == {"$pull": {"platforms": "Hulu"}}
    assert build_platform_removal(["Hulu", "Max"], remove_all=True) == {"$pullAll": {"platforms": ["Hulu", "Max"]}}


def test_remove_platforms(insert_movie, movies_collection):
    movie = insert_movie("Heat", platforms=["Hulu", "Max", "Netflix", "Hulu"])

    assert remove_platforms(movies_collection, str(movie["_id"]), ["Hulu", "Max"]) == ["Max", "Netflix"]
    assert remove_platforms(movies_collection, str(movie["_id"]), ["Max", "Netflix"], remove_all=True) == []


def test_stats_update_builds_one_document_per_operator():
    stats_update = MovieStatsUpdate.from_payload(
        {
            "increment": {"views": 1},
            "multiply": {"boost": 1.5},
            "clamp_min": {"lowest_price": 3},
            "clamp_max": {"peak_rank": 10},
            "set_fields": {"language": "English"},
            "unset_fields": ["legacy_score"],
        }
    )

    assert stats_update.to_update_document() == {
        "$inc": {"views": 1},
        "$mul": {"boost": 1.5},
        "$min": {"lowest_price": 3},
        "$max": {"peak_rank": 10},
        "$set": {"language": "English"},
        "$unset": {"legacy_score": ""},
    }


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"increment": {"views": "one"}},
        {"increment": {"views": True}},
        {"set_fields": {"_id": "x"}},
        {"set_fields": {"reviews.0.rating": 5}},
        {"increment": {"views": 1}, "unset_fields": ["views"]},
        {"set_fields": {"rating": {"count": 0}}, "increment": {"rating.count": 1}},
        {"increment": {"rating.count": 1}, "unset_fields": ["rating"]},
        {"unset_fields": [3]},
        {"clamp_max": 5},
    ],
)
def test_invalid_stats_updates_are_rejected(payload):
    with pytest.raises(ValidationError):
        MovieStatsUpdate.from_payload(payload).to_update_document()


def test_stats_update_is_applied_atomically(insert_movie, movies_collection):
    movie = insert_movie("Heat", views=10, peak_rank=4, legacy_score=7)
    stats_update = MovieStatsUpdate(
        increment={"views": 5},
        clamp_max={"peak_rank": 9},
        set_fields={"language": "English"},
        unset_fields=["legacy_score"],
    )

    updated = update_movie_stats(movies_collection, str(movie["_id"]), stats_update)

    assert updated["views"] == 15
    assert updated["peak_rank"] == 9
    assert updated["language"] == "English"
    assert "legacy_score" not in updated
    assert "reviews" not in updated


def test_listing_filter():
    assert build_listing_filter() == {}
    assert build_listing_filter("Drama", "4") == {"genres": "Drama", "reviews.rating": {"$gte": 4.0}}
    with pytest.raises(ValidationError):
        build_listing_filter(min_rating="high")


def test_listing_by_genre_and_minimum_rating(insert_movie, make_review, movies_collection):
    insert_movie("Loved", genres=["Drama"], reviews=[make_review("u1", 2), make_review("u2", 5)])
    insert_movie("Panned", genres=["Drama"], reviews=[make_review("u1", 2)])
    insert_movie("Comedy", genres=["Comedy"], reviews=[make_review("u1", 5)])

    movies = fetch_movies(movies_collection, build_listing_filter("Drama", 4))

    assert [movie["title"] for movie in movies] == ["Loved"]


def test_fetch_movie_accepts_string_and_object_ids(insert_movie, movies_collection):
    movie = insert_movie("Heat")
    movies_collection.insert_one({"_id": "tt0113277", "title": "Heat (imported)"})

    assert fetch_movie(movies_collection, str(movie["_id"]))["_id"] == str(movie["_id"])
    assert fetch_movie(movies_collection, "tt0113277")["title"] == "Heat (imported)"
    with pytest.raises(NotFoundError):
        fetch_movie(movies_collection, "tt000")
    with pytest.raises(ValidationError):
        fetch_movie(movies_collection, " ")


def test_fetch_movies_by_ids_keeps_list_order(insert_movie, movies_collection):
    first = insert_movie("First")
    second = insert_movie("Second")

    movies = fetch_movies_by_ids(movies_collection, [str(second["_id"]), "gone", str(first["_id"])])

    assert [movie["title"] for movie in movies] == ["Second", "First"]


def test_sibling_paths_may_share_a_parent():
    stats_update = MovieStatsUpdate(increment={"rating.count": 1}, set_fields={"rating.source": "imdb", "ratings": 2})

    assert stats_update.to_update_document() == {
        "$inc": {"rating.count": 1},
        "$set": {"rating.source": "imdb", "ratings": 2},
    }
