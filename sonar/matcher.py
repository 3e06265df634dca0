"""
Content Matcher.

Decides whether a fetched post genuinely mentions what a monitor watches.
Matching is whole-word and case-insensitive: keyword "cat" matches "I have a
cat" but not "catalyst". Monitors may instead carry a boolean search query:

    "exact phrase"      phrase match
    title:word          only in the title (also body:, author:, platform:, subreddit:)
    NOT word / -word    exclude
    a OR b              either
    a b / a AND b       both (AND is the default)
    (a OR b) c          grouping
"""

import logging
import re
from dataclasses import dataclass, field
from functools import lru_cache

from .models import Monitor, RawPost

logger = logging.getLogger("sonar.matcher")

FIELDS = ("title", "body", "author", "platform", "subreddit")
# Fields compared by equality rather than by word search
EXACT_FIELDS = ("author", "platform", "subreddit")


@dataclass
class MatchResult:
    """Outcome of matching one post against one monitor."""
    matches: bool
    matched_terms: list[str] = field(default_factory=list)
    match_type: str = "keyword"  # company | company_keyword | keyword | boolean_search
    explanation: str = ""


@lru_cache(maxsize=4096)
def _term_pattern(term: str) -> re.Pattern:
    words = [re.escape(w) for w in term.split()]
    return re.compile(r"(?<!\w)" + r"\s+".join(words) + r"(?!\w)", re.IGNORECASE)


def contains_term(text: str, term: str) -> bool:
    """True when term occurs in text as a whole word or phrase."""
    term = term.strip()
    if not term or not text:
        return False
    return _term_pattern(term).search(text) is not None


# =============================================================================
# Boolean search queries
# =============================================================================


class SearchQueryError(ValueError):
    """Raised for malformed boolean search queries."""


@dataclass
class _Token:
    kind: str  # term | lparen | rparen | and | or | not
    value: str = ""
    field: str | None = None
    exact: bool = False


def _tokenize(query: str) -> list[_Token]:
    tokens: list[_Token] = []
    i = 0
    n = len(query)
    while i < n:
        char = query[i]
        if char.isspace():
            i += 1
            continue
        if char == "(":
            tokens.append(_Token("lparen"))
            i += 1
            continue
        if char == ")":
            tokens.append(_Token("rparen"))
            i += 1
            continue
        if char == "-" and i + 1 < n and not query[i + 1].isspace():
            tokens.append(_Token("not"))
            i += 1
            continue

        field_name = None
        match = re.match(r"(title|body|author|platform|subreddit):", query[i:], re.IGNORECASE)
        if match:
            field_name = match.group(1).lower()
            i += match.end()
            if i >= n or query[i].isspace() or query[i] in "()":
                raise SearchQueryError(f"Empty value for field '{field_name}'")

        if query[i] in "\"'":
            quote = query[i]
            end = query.find(quote, i + 1)
            if end == -1:
                raise SearchQueryError("Unmatched quote")
            value = query[i + 1:end]
            i = end + 1
            if value.strip():
                tokens.append(_Token("term", value.strip(), field_name, exact=True))
            continue

        start = i
        while i < n and not query[i].isspace() and query[i] not in "()\"":
            i += 1
        word = query[start:i]
        upper = word.upper()
        if field_name is None and upper in ("AND", "OR", "NOT"):
            tokens.append(_Token(upper.lower()))
        else:
            tokens.append(_Token("term", word, field_name))
    return tokens


class _Node:
    def evaluate(self, post: RawPost, matched: list[str]) -> bool:
        raise NotImplementedError

    def describe(self) -> str:
        raise NotImplementedError

    def positive_terms(self) -> list[str]:
        return []


@dataclass
class _Term(_Node):
    value: str
    field: str | None = None
    exact: bool = False

    def evaluate(self, post: RawPost, matched: list[str]) -> bool:
        if self.field in EXACT_FIELDS:
            if self.field == "author":
                actual = post.author
            elif self.field == "platform":
                actual = post.platform
            else:
                actual = post.metadata.get("subreddit")
            found = bool(actual) and str(actual).lower() == self.value.lower()
        elif self.field == "title":
            found = contains_term(post.title, self.value)
        elif self.field == "body":
            found = contains_term(post.body, self.value)
        else:
            found = contains_term(post.text, self.value)
        if found and self.field not in EXACT_FIELDS and self.value not in matched:
            matched.append(self.value)
        return found

    def describe(self) -> str:
        text = f'"{self.value}"' if self.exact else self.value
        return f"{self.field}:{text}" if self.field else text

    def positive_terms(self) -> list[str]:
        return [] if self.field in EXACT_FIELDS else [self.value]


@dataclass
class _Not(_Node):
    child: _Node

    def evaluate(self, post: RawPost, matched: list[str]) -> bool:
        # Terms under NOT never count as matched terms
        return not self.child.evaluate(post, [])

    def describe(self) -> str:
        return f"NOT {self.child.describe()}"


@dataclass
class _And(_Node):
    children: list[_Node]

    def evaluate(self, post: RawPost, matched: list[str]) -> bool:
        local: list[str] = []
        for child in self.children:
            if not child.evaluate(post, local):
                return False
        matched.extend(t for t in local if t not in matched)
        return True

    def describe(self) -> str:
        return "(" + " AND ".join(c.describe() for c in self.children) + ")"

    def positive_terms(self) -> list[str]:
        return [t for c in self.children for t in c.positive_terms()]


@dataclass
class _Or(_Node):
    children: list[_Node]

    def evaluate(self, post: RawPost, matched: list[str]) -> bool:
        # Evaluate every branch so all matching terms are recorded
        results = [child.evaluate(post, matched) for child in self.children]
        return any(results)

    def describe(self) -> str:
        return "(" + " OR ".join(c.describe() for c in self.children) + ")"

    def positive_terms(self) -> list[str]:
        return [t for c in self.children for t in c.positive_terms()]


class _Parser:
    def __init__(self, tokens: list[_Token]):
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> _Token | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _next(self) -> _Token:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self) -> _Node:
        node = self._or()
        if self._peek() is not None:
            raise SearchQueryError("Unexpected ')'")
        return node

    def _or(self) -> _Node:
        children = [self._and()]
        while self._peek() is not None and self._peek().kind == "or":
            self._next()
            children.append(self._and())
        return children[0] if len(children) == 1 else _Or(children)

    def _and(self) -> _Node:
        children = [self._unary()]
        while True:
            token = self._peek()
            if token is None or token.kind in ("or", "rparen"):
                break
            if token.kind == "and":
                self._next()
            children.append(self._unary())
        return children[0] if len(children) == 1 else _And(children)

    def _unary(self) -> _Node:
        token = self._peek()
        if token is None:
            raise SearchQueryError("Query ends with an operator")
        if token.kind == "not":
            self._next()
            return _Not(self._unary())
        if token.kind == "lparen":
            self._next()
            node = self._or()
            closing = self._peek()
            if closing is None or closing.kind != "rparen":
                raise SearchQueryError("Unbalanced parentheses")
            self._next()
            return node
        if token.kind == "term":
            self._next()
            return _Term(token.value, token.field, token.exact)
        raise SearchQueryError(f"Unexpected operator '{token.kind.upper()}'")


@dataclass
class SearchQuery:
    """A parsed boolean search query."""
    original: str
    root: _Node

    def match(self, post: RawPost) -> MatchResult:
        matched: list[str] = []
        ok = self.root.evaluate(post, matched)
        if ok:
            explanation = f"Matched: {', '.join(matched) or 'all criteria'}"
        else:
            explanation = f"Does not satisfy: {self.explanation}"
        return MatchResult(ok, matched if ok else [], "boolean_search", explanation)

    @property
    def explanation(self) -> str:
        return self.root.describe()

    @property
    def terms(self) -> list[str]:
        """Text terms the query looks for, excluding negated ones."""
        seen: list[str] = []
        for term in self.root.positive_terms():
            if term.lower() not in (s.lower() for s in seen):
                seen.append(term)
        return seen


@lru_cache(maxsize=1024)
def parse_search_query(query: str) -> SearchQuery:
    """
    Parse a boolean search query.

    Raises:
        SearchQueryError: If the query is empty or malformed.
    """
    tokens = _tokenize(query)
    if not tokens:
        raise SearchQueryError("Empty query")
    return SearchQuery(original=query, root=_Parser(tokens).parse())


def validate_search_query(query: str) -> str | None:
    """Return an error message for a malformed query, or None if it parses."""
    try:
        parse_search_query(query)
    except SearchQueryError as e:
        return str(e)
    return None


# =============================================================================
# Monitor matching
# =============================================================================


def match_post(post: RawPost, monitor: Monitor) -> MatchResult:
    """
    Check whether a post matches a monitor's company name or keywords.

    All matched terms are collected (company name first); the caller still
    inserts the post once.
    """
    if monitor.search_query and monitor.search_query.strip():
        try:
            return parse_search_query(monitor.search_query).match(post)
        except SearchQueryError as e:
            logger.warning(
                f"Monitor {monitor.id} has an invalid search query ({e}), falling back to keywords"
            )

    text = post.text
    matched: list[str] = []
    seen: set[str] = set()

    company = (monitor.company_name or "").strip()
    company_hit = bool(company) and contains_term(text, company)
    if company_hit:
        matched.append(company)
        seen.add(company.lower())

    for keyword in monitor.keywords:
        keyword = keyword.strip()
        if not keyword or keyword.lower() in seen:
            continue
        if contains_term(text, keyword):
            matched.append(keyword)
            seen.add(keyword.lower())

    if not matched:
        return MatchResult(False, [], "keyword", "No matches found")

    if company_hit and len(matched) > 1:
        return MatchResult(
            True, matched, "company_keyword",
            f"Company + keyword match: {', '.join(matched)}",
        )
    if company_hit:
        return MatchResult(True, matched, "company", f"Direct company name mention: {company}")
    return MatchResult(True, matched, "keyword", f"Keyword match: {', '.join(matched)}")


def search_terms(monitor: Monitor) -> list[str]:
    """Terms to send upstream for a monitor: its query terms, or company name plus keywords."""
    if monitor.search_query and monitor.search_query.strip():
        try:
            terms = parse_search_query(monitor.search_query).terms
        except SearchQueryError:
            terms = []
        if terms:
            return terms

    terms = []
    for term in [monitor.company_name or "", *monitor.keywords]:
        term = term.strip()
        if term and term.lower() not in (t.lower() for t in terms):
            terms.append(term)
    return terms
