"""Tests for record identity mapping."""

from databridge.migration.identity import RecordIdentityMapper, document_key


def candidates(pairs, table="fact_orders", execution_id="e1"):
    return RecordIdentityMapper.build_candidates(
        execution_id=execution_id,
        project_id="p1",
        table_name=table,
        document_type="Orders",
        source_id_column="order_id",
        target_id_column="id",
        pairs=pairs,
    )


class TestDocumentKey:
    def test_lowercases_type(self):
        assert document_key("Orders", 10) == "orders_10"

    def test_keeps_id_text(self):
        assert document_key("invoice", "A-7") == "invoice_A-7"


class TestBuildCandidates:
    def test_pairs_become_candidates(self):
        result = candidates([(1, 10), (2, 11)])

        assert [(c.target_id, c.source_id) for c in result] == [("1", "10"), ("2", "11")]
        assert result[0].source_document_key == "orders_10"
        assert result[0].source_id_column == "order_id"

    def test_null_keys_are_dropped(self):
        assert candidates([(1, None), (None, 5)]) == []


class TestPersist:
    def test_persist_and_lookup(self, state):
        mapper = RecordIdentityMapper(state, batch_size=2)

        written = mapper.persist(candidates([(1, 10), (2, 11), (3, 12)]))

        assert written == 3
        record = mapper.lookup_by_source_id("e1", "fact_orders", 11)
        assert record.target_id == "2"
        assert mapper.lookup_by_document_key("e1", "orders_12").target_id == "3"
        assert mapper.lookup_by_document_key("e1", "orders_99") is None

    def test_duplicate_source_ids_keep_last(self, state):
        mapper = RecordIdentityMapper(state)

        written = mapper.persist(candidates([(1, 10), (2, 10)]))

        assert written == 1
        assert mapper.lookup_by_source_id("e1", "fact_orders", 10).target_id == "2"

    def test_persist_replaces_table_scope_only(self, state):
        mapper = RecordIdentityMapper(state)
        mapper.persist(candidates([(1, 10)], table="fact_orders"))
        mapper.persist(candidates([(1, 20)], table="fact_returns"))

        mapper.persist(candidates([(5, 10), (6, 11)], table="fact_orders"))

        assert mapper.stats("e1") == {
            "total": 3,
            "by_table": {"fact_orders": 2, "fact_returns": 1},
        }

    def test_executions_are_isolated(self, state):
        mapper = RecordIdentityMapper(state)
        mapper.persist(candidates([(1, 10)], execution_id="e1"))
        mapper.persist(candidates([(7, 10)], execution_id="e2"))

        assert mapper.document_index("e1")["orders_10"].target_id == "1"
        assert mapper.document_index("e2")["orders_10"].target_id == "7"

    def test_nothing_to_persist(self, state):
        assert RecordIdentityMapper(state).persist([]) == 0
        assert RecordIdentityMapper(state).stats("e1") == {"total": 0, "by_table": {}}


class TestDeleteExecution:
    def test_removes_only_that_execution(self, state):
        mapper = RecordIdentityMapper(state)
        state.create_stages("p1", "e1")
        state.create_stages("p1", "e2")
        mapper.persist(candidates([(1, 10), (2, 11)], execution_id="e1"))
        mapper.persist(candidates([(7, 10)], execution_id="e2"))

        removed = state.delete_execution("e1")

        assert removed == 8
        assert state.list_stages("e1") == []
        assert mapper.stats("e1")["total"] == 0
        assert len(state.list_stages("e2")) == 6
        assert mapper.stats("e2")["total"] == 1

    def test_unknown_execution(self, state):
        assert state.delete_execution("missing") == 0
