"""
Structured Content Detection
============================
Secondary extractors applied to every question stem, independent of
the main grammar cascade:

    - Truth tables:  "A B Y 0 0 1 0 1 0 1 0 1 1 1 0"
    - Match lists:   "List-I ... List-II ... (A) x (I) y ..."
    - Diagram cues:  "P-V diagram", "as shown in figure", ...
    - Subject:       keyword catalogue (physics/chemistry/botany/zoology)

Diagram detection is advisory: it never raises, a miss only means no
diagram is requested for the question.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

from .models import ListItem, StructuredData, StructuredDataType

logger = logging.getLogger(__name__)


# ─── Truth Tables ─────────────────────────────────────────────────────────────

# 2-4 single capital variables directly followed by a run of 0/1 tokens
TRUTH_TABLE_PATTERN = re.compile(
    r"(?<![A-Za-z0-9(])((?:[A-Z][ \t\n]+){1,3}[A-Z])[ \t\n]+((?:[01](?:[ \t\n]+|$)){4,})"
)


def extract_truth_table(text: str) -> Optional[StructuredData]:
    """Return a truth table if the text holds a header plus at least two rows."""
    for match in TRUTH_TABLE_PATTERN.finditer(text):
        headers = match.group(1).split()
        if len(set(headers)) != len(headers):
            continue

        tokens = match.group(2).split()
        width = len(headers)
        rows = [
            tokens[i:i + width]
            for i in range(0, len(tokens) - width + 1, width)
        ]
        if len(rows) < 2:
            continue

        return StructuredData(
            type=StructuredDataType.TRUTH_TABLE,
            headers=headers,
            rows=rows,
            description="Truth table for logic circuit",
        )
    return None


# ─── Match Lists ──────────────────────────────────────────────────────────────

MATCH_LIST_TRIGGER = re.compile(r"List[-\s]?I\b.*?List[-\s]?II\b", re.IGNORECASE | re.DOTALL)
MATCH_LIST_HEADERS = re.compile(
    r"List[-\s]?I\s*\(([^)]+)\)\s*List[-\s]?II\s*\(([^)]+)\)", re.IGNORECASE
)

# Labels are case-sensitive: lowercase (a)-(d) are answer options
INTERSPERSED_PATTERN = re.compile(
    r"\(([A-D])\)\s*([^(]+?)\s*\(([IVX]+)\)\s*([^(]+?)"
    r"(?=\s*\([A-D]\)|\s*Choose|\s*$)"
)
LIST_I_PATTERN = re.compile(
    r"\(([A-D])\)\s*([^(]+?)(?=\s*\([A-D]\)|\s*\([IVX]+\)|\s*List|\s*Choose|$)"
)
LIST_II_PATTERN = re.compile(
    r"\(([IVX]+)\)\s*([^(]+?)(?=\s*\([IVX]+\)|\s*Choose|\s*From|$)"
)

MAX_LIST_VALUE_LENGTH = 200


def extract_match_list(text: str) -> Optional[StructuredData]:
    """
    Parse a List-I / List-II question.

    Strategy 1 reads interspersed pairs "(A) x (I) y (B) ...".
    Strategy 2 reads List-I items, then List-II items, and pairs them by
    position. A detected but unparseable list yields empty columns so the
    question is still typed as a match list.
    """
    if not MATCH_LIST_TRIGGER.search(text):
        return None

    header_match = MATCH_LIST_HEADERS.search(text)
    header_i = header_match.group(1).strip() if header_match else "List-I"
    header_ii = header_match.group(2).strip() if header_match else "List-II"

    list_i: list[ListItem] = []
    list_ii: list[ListItem] = []

    for match in INTERSPERSED_PATTERN.finditer(text):
        list_i.append(ListItem(label=match.group(1), value=match.group(2).strip()))
        list_ii.append(ListItem(label=match.group(3), value=match.group(4).strip()))

    if not list_i:
        for match in LIST_I_PATTERN.finditer(text):
            value = match.group(2).strip()
            if 0 < len(value) < MAX_LIST_VALUE_LENGTH:
                list_i.append(ListItem(label=match.group(1), value=value))
        for match in LIST_II_PATTERN.finditer(text):
            value = match.group(2).strip()
            if 0 < len(value) < MAX_LIST_VALUE_LENGTH:
                list_ii.append(ListItem(label=match.group(1), value=value))

    if list_i or list_ii:
        description = f"Match {header_i} with {header_ii}"
    else:
        description = "Match list detected but needs manual verification"

    return StructuredData(
        type=StructuredDataType.MATCH_LIST,
        headers=[header_i, header_ii],
        rows=[[a.value, b.value] for a, b in zip(list_i, list_ii)],
        list_i=list_i,
        list_ii=list_ii,
        description=description,
    )


def extract_structured_data(text: str) -> Optional[StructuredData]:
    """Truth table first, then match list."""
    return extract_truth_table(text) or extract_match_list(text)


# ─── Diagram References ───────────────────────────────────────────────────────

DIAGRAM_CATALOGUE: list[tuple[re.Pattern, str]] = [
    (re.compile(r"p[\s-]?v\s+(diagram|graph|cycle)", re.I),
     "P-V diagram showing thermodynamic process"),
    (re.compile(r"t[\s-]?s\s+(diagram|graph)", re.I),
     "T-S diagram showing thermodynamic process"),
    (re.compile(r"circuit\s+diagram", re.I), "Electrical/electronic circuit diagram"),
    (re.compile(r"logic\s+(gate|circuit)", re.I), "Logic gate circuit diagram"),
    (re.compile(r"ray\s+diagram", re.I), "Ray diagram for optics"),
    (re.compile(r"free\s+body\s+diagram", re.I), "Free body diagram showing forces"),
    (re.compile(r"block\s+diagram", re.I), "Block diagram"),
    (re.compile(r"energy\s+(level|band)\s+diagram", re.I), "Energy level/band diagram"),
    (re.compile(r"phase\s+diagram", re.I), "Phase diagram"),
    (re.compile(r"velocity[\s-]time\s+(graph|diagram)", re.I), "Velocity-time graph"),
    (re.compile(r"displacement[\s-]time\s+(graph|diagram)", re.I), "Displacement-time graph"),
    (re.compile(r"acceleration[\s-]time\s+(graph|diagram)", re.I), "Acceleration-time graph"),
    (re.compile(r"\b(figure|diagram|graph)\s*(below|above|shown|given)", re.I),
     "Figure/diagram referenced in question"),
    (re.compile(r"as\s+shown\s+(in\s+)?(the\s+)?(figure|diagram)", re.I),
     "Referenced figure/diagram"),
    (re.compile(r"refer\s+(to\s+)?(the\s+)?(figure|diagram)", re.I),
     "Referenced figure/diagram"),
    (re.compile(r"cycle\s+[a-z]{4,}", re.I), "Thermodynamic cycle diagram (e.g., ABCDA)"),
    (re.compile(r"carnot\s+cycle", re.I), "Carnot cycle diagram"),
    (re.compile(r"otto\s+cycle", re.I), "Otto cycle diagram"),
    (re.compile(r"\b(anode|cathode|electrode)", re.I), "Electrochemical cell diagram"),
    (re.compile(r"molecular\s+(structure|formula|diagram)", re.I),
     "Molecular structure diagram"),
    (re.compile(r"\b(dna|rna)\s+(structure|helix)", re.I), "DNA/RNA structure diagram"),
    (re.compile(r"cell\s+(structure|diagram|organelle)", re.I), "Cell structure diagram"),
    (re.compile(r"human\s+(body|anatomy|organ)", re.I), "Human anatomy diagram"),
]

GENERIC_DIAGRAM_CUES = [
    re.compile(r"\bfigure\b", re.I),
    re.compile(r"\bdiagram\b", re.I),
    re.compile(r"\bgraph\b", re.I),
    re.compile(r"\bshown\s+(below|above|in)\b", re.I),
    re.compile(r"\bgiven\s+(below|above|in)\b", re.I),
    re.compile(r"\bas\s+shown\b", re.I),
]

GENERIC_DIAGRAM_DESCRIPTION = "Diagram/figure referenced in question"


def detect_diagram(text: str, options: str = "") -> tuple[bool, Optional[str]]:
    """
    Look for diagram references in a stem and its options.

    Returns:
        (has_diagram, description)
    """
    try:
        full_text = f"{text or ''} {options or ''}"
        for pattern, description in DIAGRAM_CATALOGUE:
            if pattern.search(full_text):
                return True, description
        for pattern in GENERIC_DIAGRAM_CUES:
            if pattern.search(full_text):
                return True, GENERIC_DIAGRAM_DESCRIPTION
    except (TypeError, re.error) as e:
        logger.debug(f"Diagram detection skipped: {e}")
    return False, None


# ─── Subject Detection ────────────────────────────────────────────────────────

SUBJECT_KEYWORDS: list[tuple[str, re.Pattern]] = [
    ("physics", re.compile(
        r"\b(force|velocity|acceleration|momentum|energy|power|work|friction|"
        r"gravity|motion|wave|light|electricity|magnetism|circuit|current|"
        r"voltage|resistance|capacitor|inductor|thermodynamics|heat|"
        r"temperature|pressure|optics|lens|mirror|refraction|reflection)\b",
        re.I,
    )),
    ("chemistry", re.compile(
        r"\b(atom|molecule|compound|element|reaction|acid|base|salt|oxidation|"
        r"reduction|bond|ion|electron|proton|neutron|periodic|solution|"
        r"solvent|solute|catalyst|equilibrium|organic|inorganic|alkane|"
        r"alkene|benzene|alcohol|ether)\b",
        re.I,
    )),
    ("botany", re.compile(
        r"\b(plant|flower|leaf|stem|root|photosynthesis|chlorophyll|xylem|"
        r"phloem|pollen|seed|fruit|cell wall|cellulose|stomata|transpiration|"
        r"germination|pollination|taxonomy|angiosperm|gymnosperm)\b",
        re.I,
    )),
    ("zoology", re.compile(
        r"\b(animal|tissue|organ|muscle|bone|blood|heart|kidney|liver|brain|"
        r"nerve|hormone|enzyme|protein|dna|rna|gene|chromosome|"
        r"cell membrane|mitochondria|ribosome|evolution|darwin|mendel|"
        r"ecosystem|biodiversity)\b",
        re.I,
    )),
]


def detect_subject(text: str) -> str:
    """First subject whose keyword catalogue matches, else 'general'."""
    for subject, pattern in SUBJECT_KEYWORDS:
        if pattern.search(text):
            return subject
    return "general"
