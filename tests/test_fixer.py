"""Tests for quick fixes."""

import pytest

from conftest import TERRAFORM
from iac_watch.code_actions import CodeActionProvider
from iac_watch.fixer import FixSynthesizer
from iac_watch.mapper import ResultMapper
from iac_watch.models import Finding, TextDocument, apply_edit
from iac_watch.store import DiagnosticStore

EBS_VOLUME = """resource "aws_ebs_volume" "data" {
  availability_zone = "us-west-2a"
  size              = 40
  encrypted         = false
}
"""


def make_document(text=TERRAFORM, version=1):
    return TextDocument(uri="file:///main.tf", file_name="/main.tf", text=text, version=version)


def diagnostic_for(rule_id, document, start=1, end=4, suggested_fix=None):
    finding = Finding(
        rule_id=rule_id,
        file_path="/main.tf",
        start_line=start,
        end_line=end,
        title=f"Check {rule_id}",
        suggested_fix=suggested_fix,
    )
    return ResultMapper().map([finding], document)[0]


@pytest.fixture
def synthesizer():
    return FixSynthesizer()


class TestFixSynthesizer:
    """Tests for FixSynthesizer."""

    def test_public_acl_fix(self, synthesizer):
        """Test fixing a public S3 bucket ACL."""
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_20", document)

        edit = synthesizer.synthesize_fix(diagnostic, document.text)

        assert edit is not None
        assert (edit.start_line, edit.end_line) == (3, 3)
        fixed = apply_edit(document.text, edit)
        assert 'acl = "private"' in fixed
        assert "public-read" not in fixed
        assert fixed.count("\n") == TERRAFORM.count("\n")

    def test_ebs_encryption_fix(self, synthesizer):
        document = make_document(EBS_VOLUME)
        diagnostic = diagnostic_for("CKV_AWS_3", document, 1, 5)

        fixed = apply_edit(document.text, synthesizer.synthesize_fix(diagnostic, document.text))

        assert "encrypted = true" in fixed
        assert "false" not in fixed

    def test_missing_block_is_added(self, synthesizer):
        """Test adding server-side encryption to an S3 bucket."""
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_19", document)

        edit = synthesizer.synthesize_fix(diagnostic, document.text)

        assert edit is not None
        assert edit.start_line == 4
        fixed = apply_edit(document.text, edit)
        assert "server_side_encryption_configuration" in fixed
        assert 'sse_algorithm = "AES256"' in fixed
        assert fixed.endswith("  }\n}\n")

    def test_existing_block_is_not_duplicated(self, synthesizer):
        text = TERRAFORM.replace("}\n", "  server_side_encryption_configuration {}\n}\n")
        document = make_document(text)
        diagnostic = diagnostic_for("CKV_AWS_19", document, 1, 5)

        assert synthesizer.synthesize_fix(diagnostic, document.text) is None

    def test_suggested_fix_replaces_range(self, synthesizer):
        """Test that the engine's fixed definition replaces the flagged lines."""
        replacement = 'resource "aws_s3_bucket" "example" {\n  bucket = "my-bucket"\n}\n'
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_999", document, suggested_fix=replacement)

        edit = synthesizer.synthesize_fix(diagnostic, document.text)

        assert apply_edit(document.text, edit) == replacement

    def test_unknown_rule(self, synthesizer):
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_999", document)

        assert synthesizer.synthesize_fix(diagnostic, document.text) is None

    def test_stale_anchor(self, synthesizer):
        """Test that no fix is offered when the flagged text changed."""
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_20", document)
        edited = document.text.replace('bucket = "my-bucket"', 'bucket = "renamed"')

        assert synthesizer.synthesize_fix(diagnostic, edited) is None

    def test_document_shrunk_below_range(self, synthesizer):
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_20", document)

        assert synthesizer.synthesize_fix(diagnostic, "resource {}") is None

    def test_available_fixes(self, synthesizer):
        fixes = synthesizer.available_fixes()

        assert "CKV_AWS_20" in fixes
        assert "CKV_AWS_19" in fixes
        assert fixes == sorted(fixes)
        assert synthesizer.has_fix("CKV_AWS_23")
        assert not synthesizer.has_fix("CKV_AWS_999")


class TestCodeActionProvider:
    """Tests for CodeActionProvider."""

    @pytest.fixture
    def store(self):
        return DiagnosticStore()

    def test_provide_and_apply(self, store):
        """Test offering and applying a quick fix."""
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_20", document)
        store.set(document.uri, [diagnostic, diagnostic_for("CKV_AWS_999", document)])
        provider = CodeActionProvider(store)

        actions = provider.provide(document)

        assert [action.diagnostic.rule_id for action in actions] == ["CKV_AWS_20"]
        assert actions[0].title == "Change S3 bucket ACL from public to private"
        assert 'acl = "private"' in provider.apply(document, actions[0].diagnostic)

    def test_provide_filters_by_range(self, store):
        document = make_document(TERRAFORM + "\n" + EBS_VOLUME)
        store.set(
            document.uri,
            [diagnostic_for("CKV_AWS_20", document, 1, 4), diagnostic_for("CKV_AWS_3", document, 6, 10)],
        )
        provider = CodeActionProvider(store)

        actions = provider.provide(document, start_line=7, end_line=8)

        assert [action.diagnostic.rule_id for action in actions] == ["CKV_AWS_3"]

    def test_apply_on_changed_document(self, store):
        """Test that a fix computed earlier is not applied to changed text."""
        document = make_document()
        diagnostic = diagnostic_for("CKV_AWS_20", document)
        store.set(document.uri, [diagnostic])
        provider = CodeActionProvider(store)

        changed = make_document(document.text.replace("my-bucket", "other"), version=2)

        assert provider.apply(changed, diagnostic) is None
