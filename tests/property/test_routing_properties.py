"""
Property-based tests for routing invariants.
"""

import asyncio
import json

from hypothesis import assume, given, settings
from hypothesis import strategies as st

from router_fakes import FakeRemoteClient, FakeRunner, InMemoryBackend

from slm_router.cascade import CascadeController, should_escalate
from slm_router.catalog import DEFAULT_CATALOG
from slm_router.context import ContextBuilder
from slm_router.local_model import LocalModelAdapter
from slm_router.memory import MemoryAdapter, word_overlap_similarity
from slm_router.patterns import PatternMatcher
from slm_router.remote_model import RemoteModelAdapter
from slm_router.types import Query, Tier, validate_arguments

json_scalars = st.one_of(
    st.none(),
    st.booleans(),
    st.integers(min_value=-(10**6), max_value=10**6),
    st.floats(allow_nan=True, allow_infinity=False),
    st.text(max_size=20),
)
json_values = st.recursive(
    json_scalars,
    lambda children: st.one_of(
        st.lists(children, max_size=3),
        st.dictionaries(st.text(max_size=8), children, max_size=3),
    ),
    max_leaves=8,
)
model_outputs = st.fixed_dictionaries(
    {},
    optional={
        "tool_name": st.one_of(st.none(), st.sampled_from(DEFAULT_CATALOG.names), st.text(max_size=15)),
        "parameters": json_values,
        "confidence": json_values,
        "escalate": json_values,
        "codeAnswer": json_values,
    },
)
queries = st.text(min_size=1, max_size=80).filter(lambda s: s.strip())


class TestSimilarityProperties:
    """Properties of the word-overlap score."""

    @given(st.text(max_size=100), st.text(max_size=100))
    @settings(max_examples=100)
    def test_bounded(self, a, b):
        assert 0.0 <= word_overlap_similarity(a, b) <= 1.0

    @given(st.text(max_size=100), st.text(max_size=100))
    @settings(max_examples=100)
    def test_symmetric(self, a, b):
        assert word_overlap_similarity(a, b) == word_overlap_similarity(b, a)

    @given(st.text(max_size=100))
    @settings(max_examples=100)
    def test_identity(self, a):
        assume(any(len(w) > 2 for w in a.lower().split()))
        assert word_overlap_similarity(a, a) == 1.0


class TestParseProperties:
    """The local model parser accepts anything without raising."""

    @given(st.text(max_size=300))
    @settings(max_examples=100)
    def test_arbitrary_text(self, content):
        decision = LocalModelAdapter(FakeRunner(), DEFAULT_CATALOG).parse(content)
        assert 0.0 <= decision.confidence <= 1.0
        assert decision.tool_name is None or decision.tool_name in DEFAULT_CATALOG

    @given(model_outputs, st.booleans())
    @settings(max_examples=200)
    def test_arbitrary_json(self, output, code_context):
        adapter = LocalModelAdapter(FakeRunner(), DEFAULT_CATALOG)
        decision = adapter.parse(json.dumps(output), code_context_supplied=code_context)

        assert 0.0 <= decision.confidence <= 1.0
        assert decision.tool_name is None or decision.tool_name in DEFAULT_CATALOG
        raw_tool = output.get("tool_name")
        unknown_tool = isinstance(raw_tool, str) and raw_tool.strip() not in ("", *DEFAULT_CATALOG.names)
        if decision.error is not None or unknown_tool:
            assert decision.escalate is True
        if not code_context:
            assert decision.code_answer is None
        # Parsed arguments are already tool-safe
        assert validate_arguments(decision.arguments) == decision.arguments


class TestPatternProperties:
    """Properties of deterministic matching."""

    @given(queries)
    @settings(max_examples=100)
    def test_deterministic(self, query):
        matcher = PatternMatcher()
        assert matcher.match(query) == matcher.match(query)

    @given(
        st.from_regex(r"[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][0-9A-Z]Z[0-9A-Z]", fullmatch=True),
        st.sampled_from(["Check GST ", "verify ", "GSTIN: ", ""]),
    )
    @settings(max_examples=50)
    def test_any_gstin_routes_to_gst_verify(self, gstin, prefix):
        match = PatternMatcher().match(prefix + gstin)
        assert match.tool_name == "gst_verify"
        assert match.arguments["gstin"] == gstin


class TestCascadeProperties:
    """Invariants of a full pass through the cascade."""

    @given(queries, model_outputs)
    @settings(max_examples=40, deadline=None)
    def test_decision_invariants(self, text, output):
        runner = FakeRunner(json.dumps(output))
        cascade = CascadeController(
            matcher=PatternMatcher(),
            local=LocalModelAdapter(runner, DEFAULT_CATALOG),
            remote=RemoteModelAdapter(client=FakeRemoteClient()),
            memory=MemoryAdapter(InMemoryBackend()),
            context=ContextBuilder(),
        )

        decision = asyncio.run(cascade.route(Query(text)))

        assert 0.0 <= decision.confidence <= 1.0
        assert decision.tool_name is None or decision.tool_name in DEFAULT_CATALOG
        if decision.tier == Tier.DETERMINISTIC:
            assert runner.calls == 0
        if decision.escalated:
            assert decision.tier == Tier.REMOTE_MODEL
            assert decision.answer is not None

    @given(queries, st.floats(min_value=0.0, max_value=1.0), st.booleans())
    @settings(max_examples=100)
    def test_escalation_reason_known(self, text, confidence, requested):
        reason = should_escalate(text, confidence, requested)
        assert reason in (None, "low_confidence", "model_requested", "complex_query")
        if confidence < 0.7:
            assert reason == "low_confidence"
