"""Unit tests for the rank table."""

import pytest

from rankup.engine.ranks import LADDER, RankTable, normalize_rank
from rankup.errors import InvalidRank


@pytest.mark.unit
class TestRankTable:
    """Test prices, thresholds and successors."""

    def test_default_prices(self):
        table = RankTable()
        assert table.price_for("Academy") == 250
        assert table.price_for("Genin") == 200
        for rank in ("Chuunin", "Jounin", "Special Jounin", "Kage"):
            assert table.price_for(rank) == 180

    def test_successors_follow_ladder(self):
        table = RankTable()
        for current, following in zip(LADDER, LADDER[1:]):
            assert table.next_rank(current) == following
        assert table.next_rank("Kage") == "Kage"

    def test_aliases_resolve_to_canonical_rank(self):
        table = RankTable()
        assert normalize_rank("Special Jonin") == "Special Jounin"
        assert table.entry("Jonin").rank == "Jounin"
        assert table.next_rank("Special Jonin") == "Kage"

    def test_unknown_rank_rejected(self):
        table = RankTable()
        with pytest.raises(InvalidRank):
            table.price_for("Hokage")
        assert "Hokage" not in table

    def test_terminal_rank_rejected_under_reject_policy(self):
        table = RankTable(terminal_policy="reject")
        assert "Kage" not in table
        with pytest.raises(InvalidRank):
            table.entry("Kage")
        assert table.next_rank("Special Jounin") == "Kage"

    def test_configured_prices_override_defaults(self):
        prices = {rank: 10 for rank in LADDER}
        table = RankTable(prices=prices)
        assert table.price_for("Academy") == 10

    def test_threshold_out_of_range(self):
        thresholds = {rank: 50 for rank in LADDER}
        thresholds["Genin"] = 0
        with pytest.raises(ValueError):
            RankTable(thresholds=thresholds)

    def test_missing_rank_configuration(self):
        prices = {rank: 100 for rank in LADDER if rank != "Jounin"}
        with pytest.raises(ValueError):
            RankTable(prices=prices)
