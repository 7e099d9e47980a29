# ExperimentRegistry のテスト
"""
ExperimentRegistry の単体テスト（実SQLiteファイルを使用）

テスト観点:
- 明示的な作成（provenance=server）と重複名の拒否
- get_or_create による自動作成（provenance=client）と並行作成の競合
- 衝突フラグの一方向性
- 勝者宣言の前提条件
- URL検索・一覧・削除
"""

import threading

import pytest

from headline_ab.errors import (
    AlreadyExistsError,
    InvalidDefinitionError,
    InvalidStateError,
    InvalidVariantError,
    NotFoundError,
)
from headline_ab.models.experiment import EventKind, ExperimentState, Provenance


class TestCreate:
    """create のテスト"""

    def test_create_sets_server_provenance(self, registry):
        experiment = registry.create("hero", ["Ship Faster", "Build Better"])

        assert experiment.id is not None
        assert experiment.provenance == Provenance.SERVER
        assert experiment.state == ExperimentState.RUNNING
        assert experiment.has_conflict is False
        assert experiment.winner_variant is None

    def test_create_with_weights_round_trips(self, registry):
        registry.create("hero", ["A", "B"], weights=[0.25, 0.75], conversion_goal="signup")

        stored = registry.get("hero")
        assert stored.weights == [0.25, 0.75]
        assert stored.conversion_goal == "signup"

    def test_create_with_targeting(self, registry):
        experiment = registry.create("hero", ["A", "B"], url="/", target="h1", cta_target="button")

        assert experiment.url == "/"
        assert experiment.target == "h1"
        assert experiment.cta_target == "button"
        assert experiment.conversion_url is None

    def test_duplicate_name_rejected(self, registry):
        registry.create("hero", ["A", "B"])

        with pytest.raises(AlreadyExistsError):
            registry.create("hero", ["C", "D"])

    def test_invalid_definition_rejected(self, registry):
        with pytest.raises(InvalidDefinitionError):
            registry.create("hero", ["only-one"])

    def test_invalid_name_rejected(self, registry):
        with pytest.raises(InvalidDefinitionError):
            registry.create("hero test", ["A", "B"])


class TestGet:
    """get のテスト"""

    def test_missing_raises_not_found(self, registry):
        with pytest.raises(NotFoundError):
            registry.get("missing")

    def test_corrupt_variants_raise_invalid_definition(self, registry, db):
        registry.create("hero", ["A", "B"])
        with db.get_cursor() as cur:
            cur.execute("UPDATE experiments SET variants = '{oops' WHERE name = 'hero'")

        with pytest.raises(InvalidDefinitionError):
            registry.get("hero")


class TestGetOrCreate:
    """get_or_create のテスト"""

    def test_creates_with_client_provenance(self, registry):
        experiment, created = registry.get_or_create("hero", ["A", "B"])

        assert created is True
        assert experiment.provenance == Provenance.CLIENT

    def test_returns_existing_definition(self, registry):
        registry.create("hero", ["A", "B"])

        experiment, created = registry.get_or_create("hero", ["X", "Y", "Z"])

        assert created is False
        assert experiment.variants == ["A", "B"]
        assert experiment.provenance == Provenance.SERVER

    def test_existing_ignores_invalid_labels(self, registry):
        """既存の実験には提示されたバリアント一覧を検証しない"""
        registry.create("hero", ["A", "B"])

        experiment, created = registry.get_or_create("hero", ["only"])
        assert created is False

    def test_invalid_labels_rejected_when_creating(self, registry):
        with pytest.raises(InvalidDefinitionError):
            registry.get_or_create("hero", ["only"])

    def test_concurrent_auto_create_single_winner(self, registry):
        barrier = threading.Barrier(8)
        results = []
        errors = []
        lock = threading.Lock()

        def worker(n):
            barrier.wait()
            try:
                experiment, created = registry.get_or_create("hero", [f"A{n}", f"B{n}"])
            except Exception as e:  # noqa: BLE001
                with lock:
                    errors.append(e)
                return
            with lock:
                results.append((experiment.variants, created))

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert sum(1 for _, created in results if created) == 1
        assert len({tuple(variants) for variants, _ in results}) == 1
        assert registry.get("hero").variants == results[0][0]


class TestRecordConflict:
    """record_conflict のテスト"""

    def test_flag_set_once(self, registry):
        registry.create("hero", ["A", "B"])

        assert registry.record_conflict("hero") is True
        assert registry.record_conflict("hero") is False
        assert registry.get("hero").has_conflict is True

    def test_missing_experiment(self, registry):
        with pytest.raises(NotFoundError):
            registry.record_conflict("missing")


class TestSetWinner:
    """set_winner のテスト"""

    def test_completes_experiment(self, registry):
        registry.create("hero", ["A", "B", "C"])

        experiment = registry.set_winner("hero", 2)

        assert experiment.state == ExperimentState.COMPLETED
        assert experiment.winner_variant == 2

    def test_out_of_range_variant(self, registry):
        registry.create("hero", ["A", "B"])

        with pytest.raises(InvalidVariantError):
            registry.set_winner("hero", 2)
        with pytest.raises(InvalidVariantError):
            registry.set_winner("hero", -1)
        assert registry.get("hero").state == ExperimentState.RUNNING

    def test_second_declaration_rejected(self, registry):
        registry.create("hero", ["A", "B"])
        registry.set_winner("hero", 0)

        with pytest.raises(InvalidStateError):
            registry.set_winner("hero", 1)
        assert registry.get("hero").winner_variant == 0

    def test_paused_experiment_rejected(self, registry, db):
        registry.create("hero", ["A", "B"])
        with db.get_cursor() as cur:
            cur.execute("UPDATE experiments SET state = 'paused' WHERE name = 'hero'")

        with pytest.raises(InvalidStateError):
            registry.set_winner("hero", 0)

        experiment = registry.get("hero")
        assert experiment.state == ExperimentState.PAUSED
        assert experiment.winner_variant is None

    def test_state_checked_before_variant(self, registry):
        registry.create("hero", ["A", "B"])
        registry.set_winner("hero", 0)

        with pytest.raises(InvalidStateError):
            registry.set_winner("hero", 99)

    def test_missing_experiment(self, registry):
        with pytest.raises(NotFoundError):
            registry.set_winner("missing", 0)


class TestTargeting:
    """set_targeting / list_by_url のテスト"""

    def test_set_targeting_stores_empty_as_null(self, registry):
        registry.create("hero", ["A", "B"], target="h1")

        experiment = registry.set_targeting("hero", url="/pricing", target="", conversion_url="/ok")

        assert experiment.url == "/pricing"
        assert experiment.target is None
        assert experiment.conversion_url == "/ok"

    def test_set_targeting_missing(self, registry):
        with pytest.raises(NotFoundError):
            registry.set_targeting("missing", url="/")

    def test_list_by_url_exact_match_running_only(self, registry):
        registry.create("hero", ["A", "B"], url="/")
        registry.create("cta", ["A", "B"], url="/")
        registry.create("pricing", ["A", "B"], url="/pricing")
        registry.create("done", ["A", "B"], url="/")
        registry.set_winner("done", 0)

        names = [e.name for e in registry.list_by_url("/")]

        assert names == ["hero", "cta"]
        assert registry.list_by_url("/missing") == []


class TestListAndDelete:
    """list_all / delete のテスト"""

    def test_list_all_newest_first(self, registry, db):
        registry.create("older", ["A", "B"])
        registry.create("newer", ["A", "B"])
        with db.get_cursor() as cur:
            cur.execute("UPDATE experiments SET created_at = 100 WHERE name = 'older'")
            cur.execute("UPDATE experiments SET created_at = 200 WHERE name = 'newer'")

        assert [e.name for e in registry.list_all()] == ["newer", "older"]

    def test_delete_removes_events(self, registry, ledger):
        registry.create("hero", ["A", "B"])
        ledger.record_event("hero", 0, EventKind.VIEW, "visitor-1")

        registry.delete("hero")

        with pytest.raises(NotFoundError):
            registry.get("hero")
        assert ledger.count_events("hero") == 0

    def test_delete_missing(self, registry):
        with pytest.raises(NotFoundError):
            registry.delete("missing")
