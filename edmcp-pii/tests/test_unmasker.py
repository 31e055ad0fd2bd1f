"""Tests for ingress unmasking."""

from xml.sax.saxutils import escape

import pytest

from edmcp_pii.core.errors import UNRESOLVED_TOKEN, UnsupportedValueError
from edmcp_pii.core.models import RosterEntry
from edmcp_pii.core.roster_index import RosterIndex
from edmcp_pii.core.unmasker import Unmasker, unmask, unmask_with_report


class TestUnmask:
    """Tests for resolving tokens to roster values."""

    def test_all_fields(self, sample_index):
        """Name, email and student id tokens resolve to their values."""
        text = "Dear M12345_name (M12345_email, M12345_CID)"
        assert unmask(text, sample_index) == "Dear Jackson Smith (jackson.smith@louisiana.edu, C00123456)"

    def test_legacy_and_bare_tokens(self, sample_index):
        """Colon tokens and bare tokens are accepted."""
        assert unmask("M12346:name and M21011", sample_index) == "Mary Johnson and Matheus John Nery"

    def test_group_token(self, sample_index):
        """Group tokens resolve to group names."""
        assert unmask("Great job, G77_name!", sample_index) == "Great job, Team Falcon!"

    def test_structured_args(self, sample_index):
        """Tokens in nested values and keys are resolved."""
        args = {"course_id": 101, "message": "Hi M12345_name", "to": ["M12346_email"], "M21011_name": True}
        assert unmask(args, sample_index) == {
            "course_id": 101,
            "message": "Hi Jackson Smith",
            "to": ["mary.johnson@louisiana.edu"],
            "Matheus John Nery": True,
        }

    def test_unknown_anchor_left_as_is(self, sample_index):
        """A token for someone not on the roster is never invented."""
        unmasked, report = unmask_with_report("Hello M55555_name", sample_index)
        assert unmasked == "Hello M55555_name"
        assert report.unresolved == ["M55555_name"]
        assert report.diagnostics[0].kind == UNRESOLVED_TOKEN

    def test_missing_field_left_as_is(self, sample_index):
        """A person without a student id keeps the CID token."""
        assert unmask("M99999_CID", sample_index) == "M99999_CID"

    def test_unresolved_reported_once(self, sample_index):
        """Repeated unresolved tokens give one diagnostic."""
        _, report = unmask_with_report(["M55555_name", "M55555_name again"], sample_index)
        assert report.unresolved == ["M55555_name"]

    def test_one_way_masks_stay(self, sample_index):
        """Irreversible masks cannot be undone."""
        text = "Jac*** Mil*** (C***888, unk**@gmail.com)"
        assert unmask(text, sample_index) == text

    def test_idempotent(self, sample_index):
        """Unmasking twice equals unmasking once."""
        text = "M12345_name wrote to M12346_name about M55555_name"
        once = unmask(text, sample_index)
        assert unmask(once, sample_index) == once

    def test_without_index(self):
        """With no roster the value passes through unchanged."""
        assert unmask({"m": "M12345_name"}, None) == {"m": "M12345_name"}

    def test_unsupported_kind(self, sample_index):
        """Values outside the JSON kinds are rejected."""
        with pytest.raises(UnsupportedValueError):
            unmask({"ids": {"M12345_name"}}, sample_index)

    def test_report_counts_substitutions(self, sample_index):
        """Each resolved token counts once."""
        _, report = unmask_with_report("M12345_name, M12345_name, M12346_name", sample_index)
        assert report.substitutions == 3


class TestEscaping:
    """Tests for escaping substituted values."""

    def test_escape_applied_to_values_only(self):
        """The escape function touches roster values, not the surrounding text."""
        entry = RosterEntry(owner_id="o", course_id=1, anchor_id=5741, display_name="Tom & Jerry Co")
        unmasker = Unmasker(RosterIndex([entry]), escape=escape)
        assert unmasker.unmask_text("<w:t>M5741_name</w:t>") == "<w:t>Tom &amp; Jerry Co</w:t>"
