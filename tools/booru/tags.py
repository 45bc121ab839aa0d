"""Tag normalization and caption templates."""

from __future__ import annotations

import re

from .models import PostRecord

DEFAULT_TEMPLATE = "{people}, {character}, {copyright}, {general}, {meta}, {artist}"

# emoticon tags whose underscores are part of the tag
UNDERSCORE_TAGS = frozenset({
    ">_<", ">_o", "0_0", "o_o", "3_3", "6_9", "@_@", "u_u", "x_x", "^_^",
    "|_|", "=_=", "+_+", "+_-", "._.", "<o>_<o>", "<|>_<|>", "||_||", "(o)_(o)",
})

PEOPLE_TAGS = frozenset({
    "1girl", "2girls", "3girls", "4girls", "5girls", "6+girls", "multiple girls",
    "1boy", "2boys", "3boys", "4boys", "5boys", "6+boys", "multiple boys",
    "1other", "2others", "3others", "4others", "5others", "6+others", "multiple others",
})

# meta tags containing one of these describe the post, not the image
OUT_OF_CONTEXT_META_PARTS = (
    "commentary", "commision", "translat", "request", "mismatch", "bad", "has",
    "resize", "scale", "edit", "source", "available", "sample", "upload", "link",
    "paid", "reward", "check", "variant", "text", "gift", "guest",
    "artist collaboration",
)

RATINGS = {"g": "general", "s": "sensitive", "q": "questionable", "e": "explicit"}

PLACEHOLDER_RE = re.compile(r"\{(people|character|copyright|general|meta|artist|rating)\}")
# literal text between two placeholders that only separates them
SEPARATOR_RE = re.compile(r"[ \t]*,?[ \t]*")


def normalize(tag: str) -> str:
    return tag if tag in UNDERSCORE_TAGS else tag.replace("_", " ")


def normalize_all(tags: tuple[str, ...] | list[str]) -> list[str]:
    return [normalize(t) for t in tags if t.strip()]


def is_out_of_context(tag: str) -> bool:
    return any(part in tag for part in OUT_OF_CONTEXT_META_PARTS)


def categorize(post: PostRecord) -> dict[str, list[str]]:
    """Normalized tags per placeholder name."""
    general = normalize_all(post.tags.general)
    meta = normalize_all(post.tags.meta)
    rating = RATINGS.get(post.rating or "", post.rating or "")
    return {
        "people": [t for t in general if t in PEOPLE_TAGS],
        "general": [t for t in general if t not in PEOPLE_TAGS],
        "character": normalize_all(post.tags.character),
        "copyright": normalize_all(post.tags.copyright),
        "artist": normalize_all(post.tags.artist),
        "meta": [t for t in meta if not is_out_of_context(t)],
        "rating": [rating] if rating else [],
    }


def _is_separator(text: str) -> bool:
    return bool(text) and SEPARATOR_RE.fullmatch(text) is not None


def _fill(line: str, groups: dict[str, list[str]]) -> str:
    """Substitute one template line, dropping each empty slot with one adjacent separator."""
    pieces = PLACEHOLDER_RE.split(line)
    # pieces alternate literal, name, literal, ...; out always ends on a literal
    out = [pieces[0]]
    for name, literal in zip(pieces[1::2], pieces[2::2]):
        value = ", ".join(groups[name])
        if value:
            out += [value, literal]
        elif _is_separator(literal):
            continue
        elif len(out) > 1 and _is_separator(out[-1]):
            out[-1] = literal
        else:
            out[-1] += literal
    return "".join(out).strip()


def render(template: str, post: PostRecord) -> str:
    """Fill ``template``'s placeholders with the post's tags.

    Each placeholder becomes its category's tags joined by ``", "``.
    Literal text in the template is kept as written, except the separator
    next to a placeholder that came out empty.
    """
    groups = categorize(post)
    return "\n".join(_fill(line, groups) for line in template.splitlines())
