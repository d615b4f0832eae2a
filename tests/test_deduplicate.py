from pipelines.deduplicate import (
    PHOTO_MATCH_REASON,
    UnionFind,
    classify_singletons,
    deduplicate_listings,
    find_clusters,
    find_exclusivity_keyword,
)
from pipelines.image_similarity import PhotoFingerprintMatcher, extract_token_from_url, photo_tokens


def test_union_find_groups_connected_members():
    uf = UnionFind(5)
    assert uf.union(0, 1)
    assert uf.union(1, 2)
    assert not uf.union(0, 2)
    groups = sorted(sorted(members) for members in uf.groups().values())
    assert groups == [[0, 1, 2], [3], [4]]
    assert uf.find(2) == uf.find(0)


def test_two_agencies_same_flat_form_one_cluster(make_record):
    records = [
        make_record(1, price=300_000, size=80),
        make_record(2, address="V. Roma, 10", price=310_000, size=82),
    ]
    result = deduplicate_listings(records)
    assert result.clusters_found == 1
    assert result.multiagency_properties == 2
    assert result.exclusive_properties == 0
    cluster = result.clusters[0]
    assert cluster.is_multiagency
    assert cluster.member_ids == [1, 2]
    assert cluster.match_score >= 70


def test_generic_addresses_never_cluster(make_record):
    records = [make_record(1, address="Milano"), make_record(2, address="Milano")]
    result = deduplicate_listings(records)
    assert result.clusters == []
    assert result.total_properties == 2


def test_clustering_is_transitive(make_record):
    distances = {
        frozenset((1, 2)): 0.0,
        frozenset((2, 3)): 0.0,
        frozenset((1, 3)): 2_000.0,
    }
    records = [
        make_record(3, latitude=45.2, longitude=9.0, price=420_000, size=120),
        make_record(1, latitude=45.0, longitude=9.0, price=300_000, size=80),
        make_record(2, latitude=45.1, longitude=9.0, price=360_000, size=100),
    ]
    by_lat = {45.0: 1, 45.1: 2, 45.2: 3}

    def geo(lat1, lon1, lat2, lon2):
        return distances[frozenset((by_lat[lat1], by_lat[lat2]))]

    clusters = find_clusters(records, threshold=40, geo_distance=geo)
    assert len(clusters) == 1
    assert clusters[0].member_ids == [1, 2, 3]


def test_cluster_members_are_disjoint(make_record):
    records = [
        make_record(1),
        make_record(2),
        make_record(3, address="Corso Como 55", price=900_000, size=200),
        make_record(4, address="Corso Como 55", price=905_000, size=201),
    ]
    clusters = find_clusters(records)
    assert [cluster.member_ids for cluster in clusters] == [[1, 2], [3, 4]]


def test_exclusivity_hint_for_unclustered_listing(make_record):
    records = [
        make_record(1, description="Vendita in ESCLUSIVA, trilocale con terrazzo"),
        make_record(2, address="Corso Como 55", price=900_000, size=200),
    ]
    result = deduplicate_listings(records)
    assert result.clusters_found == 1
    cluster = result.clusters[0]
    assert cluster.cluster_size == 1
    assert cluster.exclusivity_hint
    assert not cluster.is_multiagency
    assert cluster.match_reasons == ['exclusivity keyword "esclusiva" found in description']
    assert result.exclusive_properties == 1


def test_clustered_listing_is_not_flagged_exclusive(make_record):
    records = [make_record(1, description="esclusiva"), make_record(2)]
    hints = classify_singletons(records, clustered_ids=[1, 2])
    assert hints == []


def test_find_exclusivity_keyword_custom_list():
    assert find_exclusivity_keyword("Mandato esclusivo", ["esclusivo"]) == "esclusivo"
    assert find_exclusivity_keyword(None, ["esclusiva"]) is None
    assert find_exclusivity_keyword("Bilocale", ["esclusiva"]) is None


def test_photo_tokens_strip_resize_suffix():
    assert extract_token_from_url("https://img.example.com/a/IMG-1234_fss.jpg?w=800") == "IMG1234jpg"
    assert photo_tokens(["https://x/a/b.jpg", "https://y/c/b.jpg", ""]) == ["bjpg"]


def test_photo_match_joins_listings_with_low_score(make_record):
    shared_photo = "https://cdn.example.com/photos/living-room-42.jpg"
    records = [
        make_record(1, address="Via Roma 10", price=300_000, photo_urls=(shared_photo,)),
        make_record(2, address="Corso Como 55", price=600_000, size=150,
                    photo_urls=("https://other.example.com/x/living-room-42.jpg",)),
        make_record(3, address="Piazza Duomo 1", price=900_000, size=300),
    ]
    assert deduplicate_listings(records).clusters == []

    result = deduplicate_listings(records, image_similarity=PhotoFingerprintMatcher())
    assert [cluster.member_ids for cluster in result.clusters] == [[1, 2]]
    assert PHOTO_MATCH_REASON in result.clusters[0].match_reasons


def test_photo_matcher_requires_photos_on_both_sides(make_record):
    matcher = PhotoFingerprintMatcher()
    assert not matcher(make_record(1, photo_urls=("https://x/a.jpg",)), make_record(2))
