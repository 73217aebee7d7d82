from datetime import datetime, timedelta, timezone

import pytest

from app.errors import ValidationError
from app.models.ecm import (
    ClassificationActionType,
    ClassificationCriteria,
    ConditionLogic,
    ConditionOperator,
    RunFrequency,
)
from app.services.rule_engine import (
    Action,
    Condition,
    RuleDefinition,
    actions_to_patch,
    classify,
    document_extension,
    effective_actions,
    evaluate_condition,
    next_run_after,
    rule_matches,
    validate_auto_archive_rule,
    validate_rule,
)

from mocks import T0, make_document

INVOICE_CONDITIONS = [
    {"criteria": "filename", "operator": "contains", "value": "facture"},
    {"criteria": "extension", "operator": "equals", "value": "pdf"},
]
INVOICE_ACTIONS = [
    {"action": "set_type", "value": "invoice"},
    {"action": "add_tag", "value": "comptabilité"},
    {"action": "set_retention", "value": "FIS-01"},
]


def _rule(
    conditions,
    actions,
    *,
    name="rule",
    priority=100,
    logic="and",
    is_active=True,
    run_on_upload=True,
):
    parsed_conditions, parsed_actions, parsed_logic = validate_rule(
        conditions, actions, logic
    )
    return RuleDefinition(
        id=f"rule-{name}",
        name=name,
        priority=priority,
        conditions=parsed_conditions,
        actions=parsed_actions,
        condition_logic=parsed_logic,
        is_active=is_active,
        run_on_upload=run_on_upload,
    )


def _condition(criteria, operator, value):
    return Condition(
        criteria=ClassificationCriteria(criteria),
        operator=ConditionOperator(operator),
        value=value,
    )


class TestValidateRule:
    def test_valid_rule(self):
        conditions, actions, logic = validate_rule(
            INVOICE_CONDITIONS, INVOICE_ACTIONS, "and", known_categories=["FIS-01"]
        )
        assert len(conditions) == 2
        assert actions[0] == Action(ClassificationActionType.set_type, "invoice")
        assert logic == ConditionLogic.and_

    def test_requires_conditions(self):
        with pytest.raises(ValidationError) as exc:
            validate_rule([], INVOICE_ACTIONS)
        assert exc.value.field == "conditions"

    def test_requires_actions(self):
        with pytest.raises(ValidationError) as exc:
            validate_rule(INVOICE_CONDITIONS, [])
        assert exc.value.field == "actions"

    def test_numeric_operator_needs_number(self):
        with pytest.raises(ValidationError):
            validate_rule(
                [{"criteria": "size", "operator": "greater_than", "value": "big"}],
                INVOICE_ACTIONS,
            )

    def test_metadata_numeric_value_after_equals(self):
        conditions, _, _ = validate_rule(
            [{"criteria": "metadata", "operator": "greater_than", "value": "amount=100"}],
            INVOICE_ACTIONS,
        )
        assert conditions[0].value == "amount=100"

    def test_invalid_pattern(self):
        with pytest.raises(ValidationError):
            validate_rule(
                [{"criteria": "filename", "operator": "matches", "value": "(["}],
                INVOICE_ACTIONS,
            )

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            validate_rule(
                [{"criteria": "filename", "operator": "like", "value": "x"}],
                INVOICE_ACTIONS,
            )

    def test_unknown_category(self):
        with pytest.raises(ValidationError) as exc:
            validate_rule(INVOICE_CONDITIONS, INVOICE_ACTIONS, known_categories=["X"])
        assert exc.value.field == "actions"

    def test_invalid_logic(self):
        with pytest.raises(ValidationError):
            validate_rule(INVOICE_CONDITIONS, INVOICE_ACTIONS, "xor")


class TestEvaluateCondition:
    def test_contains_is_case_insensitive(self):
        document = make_document(filename="Facture_Janvier.PDF")
        assert evaluate_condition(
            _condition("filename", "contains", "facture"), document, T0
        )

    def test_equals_is_case_insensitive(self):
        document = make_document(document_type="Invoice")
        assert not evaluate_condition(
            _condition("filename", "equals", "invoice"), document, T0
        )
        assert evaluate_condition(
            _condition("filename", "equals", "DOCUMENT.PDF"), document, T0
        )

    def test_extension_from_filename(self):
        document = make_document(filename="Facture_Janvier.PDF")
        assert document_extension(document) == "pdf"
        assert evaluate_condition(
            _condition("extension", "equals", ".pdf"), document, T0
        )

    def test_extension_missing(self):
        document = make_document(filename="README")
        assert document_extension(document) is None
        assert not evaluate_condition(
            _condition("extension", "equals", "pdf"), document, T0
        )

    def test_size_greater_than(self):
        document = make_document(size_bytes=2048)
        assert evaluate_condition(_condition("size", "greater_than", "1024"), document, T0)
        assert not evaluate_condition(_condition("size", "less_than", "1024"), document, T0)

    def test_size_unknown_never_matches(self):
        document = make_document(size_bytes=None)
        assert not evaluate_condition(
            _condition("size", "greater_than", "0"), document, T0
        )

    def test_date_age_in_days(self):
        document = make_document(created_at=T0 - timedelta(days=400))
        assert evaluate_condition(_condition("date", "greater_than", "365"), document, T0)
        assert not evaluate_condition(_condition("date", "less_than", "365"), document, T0)

    def test_date_as_iso_string(self):
        document = make_document(created_at=datetime(2023, 6, 1, tzinfo=timezone.utc))
        assert evaluate_condition(_condition("date", "starts_with", "2023-06"), document, T0)

    def test_content_matches_pattern(self):
        document = make_document(content_text="Fait entre les Soussignés le 3 mars")
        assert evaluate_condition(
            _condition("content", "matches", r"entre\s+les\s+soussign"), document, T0
        )

    def test_missing_content_never_matches(self):
        document = make_document(content_text=None)
        assert not evaluate_condition(
            _condition("content", "contains", "contrat"), document, T0
        )

    def test_metadata_key_value(self):
        document = make_document(metadata={"supplier": "ACME", "amount": "250"})
        assert evaluate_condition(
            _condition("metadata", "equals", "supplier=acme"), document, T0
        )
        assert evaluate_condition(
            _condition("metadata", "greater_than", "amount=100"), document, T0
        )
        assert not evaluate_condition(
            _condition("metadata", "equals", "client=acme"), document, T0
        )

    def test_metadata_key_presence(self):
        document = make_document(metadata={"supplier": "ACME"})
        assert evaluate_condition(_condition("metadata", "contains", "supplier"), document, T0)
        assert not evaluate_condition(_condition("metadata", "contains", "client"), document, T0)


class TestRuleMatches:
    def test_and_logic(self):
        rule = _rule(INVOICE_CONDITIONS, INVOICE_ACTIONS)
        assert rule_matches(rule, make_document(filename="facture.pdf"), T0)
        assert not rule_matches(rule, make_document(filename="facture.docx"), T0)

    def test_or_logic(self):
        rule = _rule(INVOICE_CONDITIONS, INVOICE_ACTIONS, logic="or")
        assert rule_matches(rule, make_document(filename="facture.docx"), T0)
        assert not rule_matches(rule, make_document(filename="notes.txt"), T0)

    def test_empty_conditions_never_match(self):
        rule = RuleDefinition(
            id="r", name="r", priority=1, conditions=(), actions=()
        )
        assert not rule_matches(rule, make_document(), T0)


class TestClassify:
    def test_invoice_scenario(self):
        rule = _rule(INVOICE_CONDITIONS, INVOICE_ACTIONS, name="invoices", priority=1)
        document = make_document(
            filename="Facture_Janvier.PDF", tags=(), retention_category=None
        )
        applied = classify(document, [rule], T0)
        assert [(a.action.value, a.value) for a in applied] == [
            ("set_type", "invoice"),
            ("add_tag", "comptabilité"),
            ("set_retention", "FIS-01"),
        ]
        patch = actions_to_patch(document, applied)
        assert patch == {
            "document_type": "invoice",
            "tags": ["comptabilité"],
            "retention_category": "FIS-01",
        }

    def test_priority_order_and_stable_ties(self):
        matching = [{"criteria": "filename", "operator": "contains", "value": "doc"}]
        first = _rule(matching, [{"action": "move_folder", "value": "A"}], name="a", priority=5)
        second = _rule(matching, [{"action": "move_folder", "value": "B"}], name="b", priority=5)
        urgent = _rule(matching, [{"action": "add_tag", "value": "x"}], name="c", priority=1)
        applied = classify(make_document(), [first, second, urgent], T0)
        assert [a.rule_name for a in applied] == ["c", "a", "b"]
        # Last write wins for single-valued fields.
        assert actions_to_patch(make_document(), applied)["folder"] == "B"

    def test_skips_inactive_rules(self):
        rule = _rule(INVOICE_CONDITIONS, INVOICE_ACTIONS, is_active=False)
        assert classify(make_document(filename="facture.pdf"), [rule], T0) == []

    def test_on_upload_skips_manual_rules(self):
        rule = _rule(INVOICE_CONDITIONS, INVOICE_ACTIONS, run_on_upload=False)
        document = make_document(filename="facture.pdf")
        assert classify(document, [rule], T0, on_upload=True) == []
        assert len(classify(document, [rule], T0)) == 3

    def test_effective_actions_drop_noops(self):
        rule = _rule(INVOICE_CONDITIONS, INVOICE_ACTIONS)
        document = make_document(
            filename="facture.pdf",
            document_type="invoice",
            tags=("comptabilité",),
            retention_category="FIS-01",
        )
        applied = classify(document, [rule], T0)
        assert len(applied) == 3
        assert effective_actions(document, applied) == []

    def test_add_tag_keeps_existing_tags(self):
        rule = _rule(
            [{"criteria": "filename", "operator": "contains", "value": "doc"}],
            [{"action": "add_tag", "value": "new"}],
        )
        document = make_document(tags=("old",))
        patch = actions_to_patch(document, classify(document, [rule], T0))
        assert patch == {"tags": ["old", "new"]}


class TestAutoArchiveRules:
    def test_requires_source_criterion(self):
        with pytest.raises(ValidationError) as exc:
            validate_auto_archive_rule({"target_folder": "Archives"})
        assert exc.value.field == "source"

    def test_requires_target(self):
        with pytest.raises(ValidationError) as exc:
            validate_auto_archive_rule({"source_folder": "Inbox"})
        assert exc.value.field == "target"

    def test_negative_age_rejected(self):
        with pytest.raises(ValidationError):
            validate_auto_archive_rule(
                {"source_age_days": -1, "target_folder": "Archives"}
            )

    def test_default_frequency(self):
        assert (
            validate_auto_archive_rule(
                {"source_age_days": 0, "target_locked": True}
            )
            == RunFrequency.weekly
        )

    def test_invalid_frequency(self):
        with pytest.raises(ValidationError):
            validate_auto_archive_rule(
                {
                    "source_folder": "Inbox",
                    "target_folder": "Archives",
                    "run_frequency": "hourly",
                }
            )

    def test_next_run_after(self):
        moment = datetime(2024, 1, 31, 9, tzinfo=timezone.utc)
        assert next_run_after(moment, "daily") == moment + timedelta(days=1)
        assert next_run_after(moment, RunFrequency.weekly) == moment + timedelta(days=7)
        assert next_run_after(moment, "monthly") == datetime(
            2024, 2, 29, 9, tzinfo=timezone.utc
        )
