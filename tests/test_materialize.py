from listing_schema import AgencyEntry, Cluster, SharedListing, UNKNOWN_AGENCY
from pipelines.errors import StoreError
from pipelines.materialize import materialize_clusters, shared_listing_from_cluster, upsert_cluster
from pipelines.stores import InMemoryListingStore, InMemorySharedListingStore


class FlakySharedStore(InMemorySharedListingStore):
    """Fails to create listings for one address."""

    def __init__(self, failing_key):
        super().__init__()
        self.failing_key = failing_key

    def create(self, shared):
        if shared.dedupe_key == self.failing_key:
            raise StoreError("disk full")
        return super().create(shared)


def test_shared_listing_seeded_from_first_member(make_record):
    cluster = Cluster(records=[
        make_record(1, floor="3", owner_name="Rossi", owner_phone="+39 02 1234"),
        make_record(2, portal=None),
    ])
    shared = shared_listing_from_cluster(cluster)
    assert shared.address == "Via Roma 10"
    assert shared.dedupe_key == "v roma 10"
    assert shared.floor == "3"
    assert shared.owner_name == "Rossi"
    assert shared.rating == 4
    assert shared.stage == "result"
    assert shared.stage_result == "multiagency"
    assert not shared.is_acquired
    assert shared.match_buyers
    assert [entry.agency_name for entry in shared.agencies] == ["agency-1", UNKNOWN_AGENCY]


def test_upsert_creates_then_appends_only_new_agencies(make_record):
    listings = InMemoryListingStore([make_record(1), make_record(2), make_record(3)])
    shared = InMemorySharedListingStore()

    assert upsert_cluster(Cluster(records=[listings.get(1), listings.get(2)]), listings, shared) == "created"
    assert upsert_cluster(Cluster(records=[listings.get(1), listings.get(2)]), listings, shared) == "unchanged"
    outcome = upsert_cluster(
        Cluster(records=[listings.get(1), listings.get(2), listings.get(3)]), listings, shared
    )
    assert outcome == "updated"

    assert shared.count() == 1
    stored = shared.all()[0]
    assert sorted(stored.source_record_ids) == [1, 2, 3]
    assert all(listings.get(record_id).is_shared for record_id in (1, 2, 3))


def test_upsert_converts_legacy_agency_names(make_record):
    shared = InMemorySharedListingStore(
        [SharedListing(address="Via Roma, 10", dedupe_key="v roma 10", agencies=["Legacy Immobiliare"])]
    )
    listings = InMemoryListingStore([make_record(1), make_record(2)])
    upsert_cluster(Cluster(records=[listings.get(1), listings.get(2)]), listings, shared)
    agencies = shared.all()[0].agencies
    assert all(isinstance(entry, AgencyEntry) for entry in agencies)
    assert [entry.agency_name for entry in agencies] == ["Legacy Immobiliare", "agency-1", "agency-2"]


def test_failing_cluster_does_not_stop_the_others(make_record):
    records = [
        make_record(1),
        make_record(2),
        make_record(3, address="Corso Como 55"),
        make_record(4, address="Corso Como 55"),
    ]
    listings = InMemoryListingStore(records)
    shared = FlakySharedStore(failing_key="v roma 10")
    clusters = [
        Cluster(records=records[:2]),
        Cluster(records=[make_record(5, description="esclusiva")], exclusivity_hint=True),
        Cluster(records=records[2:]),
    ]
    stats = materialize_clusters(clusters, listings, shared)

    assert stats.shared_created == 1
    assert stats.failures == 1
    assert stats.errors[0].member_ids == [1, 2]
    assert stats.properties_updated == 2
    assert shared.all()[0].address == "Corso Como 55"
    assert not listings.get(1).is_shared
    assert listings.get(3).is_shared


class BrokenWriteBackStore(InMemoryListingStore):
    def mark_shared(self, record_id, is_multiagency=True):
        if record_id == 2:
            raise StoreError("listing table locked")
        super().mark_shared(record_id, is_multiagency)


def test_clusters_without_specific_address_are_not_merged(make_record):
    records = [make_record(record_id, address="Milano") for record_id in (1, 2, 3, 4)]
    listings = InMemoryListingStore(records)
    shared = InMemorySharedListingStore()
    clusters = [Cluster(records=records[:2]), Cluster(records=records[2:])]

    stats = materialize_clusters(clusters, listings, shared)

    assert shared.count() == 0
    assert stats.shared_created == 0
    assert stats.shared_updated == 0
    assert stats.failures == 2
    assert [error.member_ids for error in stats.errors] == [[1, 2], [3, 4]]
    assert not any(listings.get(record_id).is_shared for record_id in (1, 2, 3, 4))


def test_cluster_keyed_on_first_specific_address(make_record):
    records = [make_record(1, address="Milano"), make_record(2, address="Via Roma, 10")]
    listings = InMemoryListingStore(records)
    shared = InMemorySharedListingStore()

    assert upsert_cluster(Cluster(records=records), listings, shared) == "created"
    stored = shared.all()[0]
    assert stored.address == "Via Roma, 10"
    assert stored.dedupe_key == "v roma 10"
    assert stored.source_record_ids == {1, 2}


def test_created_row_is_counted_when_write_back_fails(make_record):
    records = [make_record(1), make_record(2)]
    listings = BrokenWriteBackStore(records)
    shared = InMemorySharedListingStore()

    stats = materialize_clusters([Cluster(records=records)], listings, shared)

    assert shared.count() == 1
    assert stats.shared_created == 1
    assert stats.failures == 1
    assert stats.properties_updated == 0
