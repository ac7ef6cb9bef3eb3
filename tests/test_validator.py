"""Tests for name and email confidence scoring."""

import pytest

from validator import (
    ContactValidator,
    is_name_similar_to_company,
    is_placeholder_email,
    is_placeholder_name,
    split_full_name,
)


@pytest.fixture
def scorer():
    return ContactValidator(min_name_score=20, min_email_score=40)


class TestNameScore:

    def test_executive_with_neutral_signals(self, scorer):
        result = scorer.score_name("Sarah Chen", role="Chief Executive Officer")
        assert result.score == 73
        assert result.penalties == {}

    def test_score_never_exceeds_ceiling(self, scorer):
        context = "Sarah Chen is the CEO and founder; she leads and directs the company and oversees sales."
        result = scorer.score_name("Sarah Chen", context, ai_score=100, role="CEO")
        assert result.score == 95

    def test_score_never_drops_below_floor(self, scorer):
        result = scorer.score_name("SALES MANAGER 2", ai_score=0)
        assert result.score == 20

    @pytest.mark.parametrize("name", ["Jane Doe", "john smith", "Test  User"])
    def test_placeholder_names_get_floor(self, scorer, name):
        result = scorer.score_name(name, ai_score=100, role="CEO")
        assert result.is_placeholder
        assert result.score == scorer.min_name_score

    def test_generic_terms_penalized(self, scorer):
        result = scorer.score_name("Sales Director")
        assert result.penalties["generic_terms"] == 50
        assert result.score == 20

    def test_search_term_overlap_penalized(self, scorer):
        result = scorer.score_name("Denver Smith", search_query="accounting firms in Denver")
        assert result.penalties["search_terms"] == 25

    def test_company_name_penalized(self, scorer):
        result = scorer.score_name("Acme Robotics", company_name="Acme Robotics Inc")
        assert result.penalties["company_name"] == 20

    def test_founder_context_lifts_company_name_penalty(self, scorer):
        result = scorer.score_name("Acme Robotics", company_name="Acme Robotics Inc", role="Founder")
        assert "company_name" not in result.penalties

    def test_ai_score_raises_confidence(self, scorer):
        low = scorer.score_name("Sarah Chen", ai_score=10)
        high = scorer.score_name("Sarah Chen", ai_score=90)
        assert high.score > low.score

    def test_filter_names_drops_placeholders(self, scorer):
        assert scorer.filter_names(["Jane Doe", "Sarah Chen", "Test User"]) == ["Sarah Chen"]


class TestEmailScore:

    def test_name_matching_business_email(self, scorer):
        result = scorer.score_email("sarah.chen@acmerobotics.com", "Sarah", "Chen")
        assert result.score == 92
        assert result.accepted
        assert result.is_business_domain

    def test_low_quality_personal_email_rejected(self, scorer):
        result = scorer.score_email("xk3921@gmail.com")
        assert result.score == 39
        assert not result.accepted
        assert result.reason == "low score"

    def test_role_inbox_rejected(self, scorer):
        result = scorer.score_email("info@acmerobotics.com", "Sarah", "Chen")
        assert result.is_placeholder
        assert not result.accepted

    def test_malformed_email_rejected(self, scorer):
        result = scorer.score_email("not-an-email")
        assert not result.is_valid_format
        assert result.reason == "invalid format"

    def test_email_is_normalized(self, scorer):
        result = scorer.score_email("Sarah.Chen@AcmeRobotics.com", "Sarah", "Chen")
        assert result.email == "sarah.chen@acmerobotics.com"


class TestHelpers:

    @pytest.mark.parametrize("email", [
        "firstname.lastname@acme.com",
        "john@example.com",
        "noreply@acme.com",
        "j***@acme.com",
        "support@acme.com",
    ])
    def test_placeholder_emails(self, email):
        assert is_placeholder_email(email)

    def test_real_email_is_not_placeholder(self):
        assert not is_placeholder_email("sarah.chen@acmerobotics.com")

    def test_placeholder_name_ignores_case_and_spacing(self):
        assert is_placeholder_name("  JANE   doe ")
        assert not is_placeholder_name("Jane Dorsey")

    def test_split_full_name(self):
        assert split_full_name("Mary Ann Smith") == ("Mary", "Ann Smith")
        assert split_full_name("Cher") == ("Cher", "")
        assert split_full_name("   ") == ("", "")

    def test_name_similar_to_company(self):
        assert is_name_similar_to_company("Acme Robotics", "The Acme Robotics Company")
        assert not is_name_similar_to_company("Sarah Chen", "Acme Robotics")
