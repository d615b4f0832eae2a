from listing_schema import Cluster
from pipelines.scan import ScanOrchestrator
from pipelines.stores import InMemoryListingStore, ParquetSharedListingStore
from tools.reporting import REPORT_COLUMNS, build_cluster_report, summarize_shared_listings


def test_cluster_report_rows(make_record):
    clusters = [
        Cluster(records=[make_record(1), make_record(2, portal=None)], match_score=91.234,
                match_reasons=["similar address (100%)", "same size (80 vs 80 m2)"]),
        Cluster(records=[make_record(3)], match_reasons=['exclusivity keyword "esclusiva" found in description'],
                exclusivity_hint=True),
    ]
    df = build_cluster_report(clusters)
    assert list(df.columns) == REPORT_COLUMNS
    first = df.iloc[0]
    assert first["cluster"] == 1
    assert first["member_ids"] == "1,2"
    assert first["portals"] == "agency-1,Unknown agency"
    assert first["match_score"] == 91.23
    assert first["match_reasons"] == "similar address (100%); same size (80 vs 80 m2)"
    assert bool(df.iloc[1]["exclusivity_hint"])
    assert not bool(df.iloc[1]["is_multiagency"])


def test_empty_report_keeps_columns():
    assert list(build_cluster_report([]).columns) == REPORT_COLUMNS


def test_summarize_shared_listings(tmp_path, make_record):
    shared_path = tmp_path / "shared.parquet"
    listings = InMemoryListingStore([make_record(1, portal="Casa"), make_record(2, portal="Immo")])
    ScanOrchestrator(listings, ParquetSharedListingStore(shared_path)).run_scan()

    summary = summarize_shared_listings(shared_path)
    assert summary == {"shared_listings": 1, "agencies": 2, "by_portal": {"Casa": 1, "Immo": 1}}
