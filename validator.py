"""
Confidence scoring for discovered contact names and emails
"""
import re
from typing import Dict, Iterable, List, Optional, Tuple

from email_validator import EmailNotValidError, validate_email
from loguru import logger

from config import get_settings
from models import EmailScore, NameScore

NAME_SCORE_CEILING = 95

# Step weights for the name score
PATTERN_WEIGHT = 0.25
GENERIC_WEIGHT = 0.20
AI_WEIGHT = 0.30
CONTEXT_WEIGHT = 0.15
TITLE_WEIGHT = 0.10

# Step weights for the email score
EMAIL_PATTERN_WEIGHT = 0.4
EMAIL_DOMAIN_WEIGHT = 0.3
EMAIL_NAME_WEIGHT = 0.3

PLACEHOLDER_NAMES = {
    "john doe", "jane doe", "john smith", "jane smith",
    "test user", "demo user", "example user",
    "admin user", "guest user", "unknown user",
}

GENERIC_TERMS = {
    # Job titles and positions
    "chief", "executive", "officer", "ceo", "cto", "cfo", "coo", "president",
    "director", "manager", "managers", "head", "lead", "senior", "junior",
    "vice", "assistant", "associate", "coordinator", "specialist", "analyst",
    "administrator", "supervisor", "founder", "co-founder", "owner",
    "developer", "engineer", "architect", "consultant", "advisor", "role",

    # Departments
    "sales", "marketing", "finance", "accounting", "hr", "operations", "it",
    "support", "product", "project", "research", "development", "legal",
    "compliance", "quality",

    # Business terms
    "leadership", "team", "member", "staff", "employee", "general", "key",
    "position", "department", "division", "management", "contact", "person",
    "representative", "business", "company", "enterprise", "organization",
    "corporation", "admin", "professional", "service", "office", "personnel",
    "customer", "board", "advisory", "corporate", "commercial", "digital",

    # Company identifiers
    "incorporated", "inc", "llc", "ltd", "group", "holdings", "solutions",
    "services", "international", "global", "industries", "systems",
    "technologies", "associates", "consulting", "ventures", "partners",
    "limited", "corp", "plc", "co",

    # Non-name common words
    "the", "of", "and", "a", "to", "in", "is", "at",
}

LEADERSHIP_INDICATORS = [
    "leads", "directs", "manages", "founded", "oversees", "heads", "runs",
    "led by", "headed by", "founded by", "managed by", "run by", "directed by",
    "ceo", "cto", "cfo", "coo", "president", "founder", "director", "chief",
    "vice president", "head of",
]

FOUNDER_INDICATORS = [
    "founder", "co-founder", "cofounder", "owner", "ceo", "president",
    "chief executive", "partner", "principal", "proprietor",
]

EXECUTIVE_TITLES = [
    "chief", "ceo", "cto", "cfo", "coo", "cmo", "president", "founder",
    "owner", "partner", "principal",
]

MANAGEMENT_TITLES = ["vp", "vice president", "director", "head", "manager", "lead"]

INDUSTRY_ROLES = {
    "technology": ["engineering", "product", "data", "security", "devops", "architect"],
    "healthcare": ["medical", "clinical", "patient", "nursing", "care"],
    "financial": ["investment", "risk", "wealth", "trading", "credit", "portfolio"],
    "construction": ["project", "site", "estimating", "safety"],
    "marketing": ["brand", "content", "growth", "creative", "digital"],
}

COMPANY_SUFFIXES = {
    "inc", "llc", "ltd", "corp", "co", "plc", "group", "holdings", "limited",
    "company", "corporation", "incorporated", "the",
}

PLACEHOLDER_EMAIL_PATTERNS = [
    re.compile(p) for p in [
        r"first[._-]?name",
        r"last[._-]?name",
        r"first[._-]?initial",
        r"@company(domain)?\.com$",
        r"@example\.(com|org|net)$",
        r"@domain\.com$",
        r"@email\.com$",
        r"test[._-]?user",
        r"demo[._-]?user",
        r"no[._-]?reply",
        r"do[._-]?not[._-]?reply",
        r"placeholder",
        r"temp[._-]?mail",
        r"temp[._-]?email",
        r"^(test|sample|example|user|name|your[._-]?name|yourname)@",
        r"\*",
    ]
]

# Role inboxes are never a discovery for a named person
GENERIC_EMAIL_PREFIXES = {
    "info", "support", "contact", "hello", "admin", "sales", "help",
    "marketing", "team", "office", "mail", "email", "news", "hr",
    "recruiting", "careers", "jobs", "inquiry", "inquiries", "feedback",
    "webmaster", "postmaster", "billing", "accounts", "service", "press",
    "media", "enquiries", "general", "reception",
}

PERSONAL_EMAIL_DOMAINS = {
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com", "aol.com",
    "icloud.com", "live.com", "msn.com", "protonmail.com", "me.com",
}

_PROPER_NAME = re.compile(r"^[A-Z][a-zA-Z'\-]+(?:\s+[A-Z][a-zA-Z'\-\.]*)+$")
_WORD = re.compile(r"[a-z0-9\-]+")


def _words(text: str) -> List[str]:
    return _WORD.findall(text.lower())


def _normalize_company(name: str) -> str:
    words = [w for w in _words(name) if w not in COMPANY_SUFFIXES]
    return "".join(words)


def is_placeholder_name(name: str) -> bool:
    """True for template names such as "John Doe" or "Test User"."""
    normalized = " ".join(name.lower().split())
    return normalized in PLACEHOLDER_NAMES


def is_placeholder_email(email: str) -> bool:
    """True for test, no-reply, templated and role-inbox addresses."""
    email_lower = email.strip().lower()
    if any(pattern.search(email_lower) for pattern in PLACEHOLDER_EMAIL_PATTERNS):
        return True
    local = email_lower.split("@", 1)[0]
    return local in GENERIC_EMAIL_PREFIXES


def find_generic_terms(name: str) -> List[str]:
    return [word for word in _words(name) if word in GENERIC_TERMS]


def is_name_similar_to_company(name: str, company_name: str) -> bool:
    """Name equals the company name or one contains the other."""
    normalized_name = _normalize_company(name)
    normalized_company = _normalize_company(company_name)
    if not normalized_name or not normalized_company:
        return False
    if normalized_name == normalized_company:
        return True
    shorter, longer = sorted((normalized_name, normalized_company), key=len)
    if len(shorter) > 4 and shorter in longer:
        return True
    company_words = set(_words(company_name)) - COMPANY_SUFFIXES
    return any(len(word) >= 4 and word in company_words for word in _words(name))


def has_founder_context(*texts: Optional[str]) -> bool:
    combined = " ".join(t for t in texts if t).lower()
    return any(re.search(rf"\b{re.escape(ind)}\b", combined) for ind in FOUNDER_INDICATORS)


def split_full_name(name: str) -> Tuple[str, str]:
    """First word, then everything else."""
    parts = name.strip().split()
    if not parts:
        return "", ""
    return parts[0], " ".join(parts[1:])


class ContactValidator:
    """Scores candidate contact names and discovered emails"""

    def __init__(
        self,
        min_name_score: Optional[int] = None,
        company_name_penalty: Optional[int] = None,
        search_term_penalty: Optional[int] = None,
        generic_term_penalty: Optional[int] = None,
        min_email_score: Optional[int] = None,
    ):
        settings = get_settings()
        self.min_name_score = settings.min_name_score if min_name_score is None else min_name_score
        self.company_name_penalty = (
            settings.company_name_penalty if company_name_penalty is None else company_name_penalty
        )
        self.search_term_penalty = (
            settings.search_term_penalty if search_term_penalty is None else search_term_penalty
        )
        self.generic_term_penalty = (
            settings.generic_term_penalty if generic_term_penalty is None else generic_term_penalty
        )
        self.min_email_score = settings.min_email_score if min_email_score is None else min_email_score

    # ------------------------------------------------------------------
    # Name scoring
    # ------------------------------------------------------------------

    def _pattern_score(self, name: str) -> float:
        parts = name.split()
        score = 50
        if _PROPER_NAME.match(name):
            score += 20
        if 2 <= len(parts) <= 3:
            score += 15
        red_flags = [
            bool(re.search(r"\d", name)),
            len(name) > 3 and name.isupper(),
            len(parts) < 2,
            len(parts) > 4,
            bool(re.search(r"[@/&|:]", name)),
        ]
        score -= 20 * sum(red_flags)
        return float(max(0, min(100, score)))

    def _generic_score(self, generic_terms: List[str]) -> float:
        return float(max(0, 100 - 25 * len(generic_terms)))

    def _context_score(self, name: str, context: Optional[str]) -> float:
        """Leadership language close to the name raises confidence."""
        if not context:
            return 50.0

        context_lower = context.lower()
        name_lower = name.lower()
        windows = []
        start = context_lower.find(name_lower)
        while start != -1:
            windows.append(context_lower[max(0, start - 100):start + len(name_lower) + 100])
            start = context_lower.find(name_lower, start + 1)

        if not windows:
            return 40.0

        matches = sum(
            1 for indicator in LEADERSHIP_INDICATORS
            if any(re.search(rf"\b{re.escape(indicator)}\b", window) for window in windows)
        )
        return float(min(100, 50 + 15 * matches))

    def _title_score(self, role: Optional[str], industry: Optional[str]) -> float:
        if not role:
            return 50.0

        role_words = " ".join(_words(role))
        if any(re.search(rf"\b{re.escape(t)}\b", role_words) for t in EXECUTIVE_TITLES):
            score = 90
        elif any(re.search(rf"\b{re.escape(t)}\b", role_words) for t in MANAGEMENT_TITLES):
            score = 75
        else:
            score = 60

        if industry:
            industry_roles = INDUSTRY_ROLES.get(industry.lower(), [])
            if any(r in role_words for r in industry_roles):
                score += 10
        return float(min(100, score))

    def _search_term_overlap(self, name: str, search_query: Optional[str]) -> List[str]:
        if not search_query:
            return []
        query_terms = {term for term in _words(search_query) if len(term) >= 4}
        return [word for word in _words(name) if word in query_terms]

    def score_name(
        self,
        name: str,
        context: Optional[str] = None,
        *,
        ai_score: Optional[int] = None,
        company_name: Optional[str] = None,
        search_query: Optional[str] = None,
        industry: Optional[str] = None,
        role: Optional[str] = None,
    ) -> NameScore:
        """
        Score a candidate person name

        Args:
            name: Candidate name
            context: Text the name was found in
            ai_score: Plausibility score (0-100) from the AI provider, if any
            company_name: Company the person is meant to work at
            search_query: Active search query
            industry: Company industry
            role: Title reported for the candidate

        Returns:
            NameScore clamped to [min_name_score, 95]
        """
        name = " ".join(name.split())
        if is_placeholder_name(name):
            return NameScore(name=name, score=self.min_name_score, is_placeholder=True)

        generic_terms = find_generic_terms(name)
        components = {
            "pattern": self._pattern_score(name),
            "generic": self._generic_score(generic_terms),
            "ai": float(max(0, min(100, ai_score))) if ai_score is not None else 50.0,
            "context": self._context_score(name, context),
            "title": self._title_score(role, industry),
        }
        weighted = (
            components["pattern"] * PATTERN_WEIGHT
            + components["generic"] * GENERIC_WEIGHT
            + components["ai"] * AI_WEIGHT
            + components["context"] * CONTEXT_WEIGHT
            + components["title"] * TITLE_WEIGHT
        )

        penalties: Dict[str, int] = {}
        if generic_terms:
            penalties["generic_terms"] = self.generic_term_penalty * len(generic_terms)

        overlap = self._search_term_overlap(name, search_query)
        if overlap:
            penalties["search_terms"] = self.search_term_penalty * len(overlap)

        if company_name and is_name_similar_to_company(name, company_name):
            if not has_founder_context(role, context):
                penalties["company_name"] = self.company_name_penalty

        raw = weighted - sum(penalties.values())
        score = int(round(min(NAME_SCORE_CEILING, max(self.min_name_score, raw))))

        if penalties:
            logger.debug(f"Name '{name}' scored {score} (weighted {weighted:.1f}, penalties {penalties})")

        return NameScore(name=name, score=score, components=components, penalties=penalties)

    def filter_names(self, names: Iterable[str]) -> List[str]:
        """Drop placeholder names before any scoring happens."""
        kept = []
        for name in names:
            if is_placeholder_name(name):
                logger.debug(f"Filtered placeholder name: {name}")
                continue
            kept.append(name)
        return kept

    # ------------------------------------------------------------------
    # Email scoring
    # ------------------------------------------------------------------

    def _email_pattern_score(self, local: str) -> float:
        score = 50
        if re.match(r"^[a-z]+[._-][a-z]+$", local):
            score += 30
        elif re.match(r"^[a-z]{2,}$", local):
            score += 20
        if len(re.findall(r"\d", local)) > 2:
            score -= 20
        if len(local) > 30:
            score -= 20
        return float(max(0, min(100, score)))

    def _email_name_score(self, local: str, first_name: Optional[str], last_name: Optional[str]) -> float:
        first = (first_name or "").lower().strip()
        last = (last_name or "").lower().split()[-1] if last_name and last_name.strip() else ""
        if not first and not last:
            return 50.0
        if first and last and first in local and last in local:
            return 100.0
        if (first and len(first) >= 2 and first in local) or (last and len(last) >= 2 and last in local):
            return 80.0
        return 30.0

    def score_email(
        self,
        email: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> EmailScore:
        """
        Score a discovered email address

        Placeholder addresses are never accepted, whatever their score.
        """
        try:
            normalized = validate_email(email.strip(), check_deliverability=False).normalized.lower()
        except EmailNotValidError as e:
            logger.debug(f"Rejected malformed email {email}: {e}")
            return EmailScore(email=email, reason="invalid format")

        local, domain = normalized.rsplit("@", 1)
        placeholder = is_placeholder_email(normalized)
        business = domain not in PERSONAL_EMAIL_DOMAINS

        weighted = (
            self._email_pattern_score(local) * EMAIL_PATTERN_WEIGHT
            + (100.0 if business else 40.0) * EMAIL_DOMAIN_WEIGHT
            + self._email_name_score(local, first_name, last_name) * EMAIL_NAME_WEIGHT
        )
        score = int(round(max(0, min(100, weighted))))

        if placeholder:
            reason = "placeholder"
        elif score < self.min_email_score:
            reason = "low score"
        else:
            reason = None

        return EmailScore(
            email=normalized,
            score=score,
            is_valid_format=True,
            is_placeholder=placeholder,
            is_business_domain=business,
            accepted=reason is None,
            reason=reason,
        )
