"""
Rule Catalog — Immutable Ground Truth

The catalog defines:
  1. The violation patterns (Medical Service Act Art. 56 taxonomy)
  2. The negative list: terms that are never violations on their own
     (device and drug names, skincare ingredients, specialty names,
     official certifications)
  3. Disclaimer rules and the absolute pattern IDs that a disclaimer
     can never soften
  4. Section weights used by grading
  5. Context exceptions and department rules, serialized into the
     Proposer's instructions

Everything here is a module-level constant. The catalog is loaded once
per process and does not change at runtime. Learned exceptions extend
what is suppressed; they never redefine what a violation is.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional

from medcheck.models import SectionType, Severity

CATALOG_VERSION = "2.3.0"


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class Pattern:
    """
    One catalog violation pattern.

    `regex` is the deterministic indicator used by the rule matcher.
    `exceptions` are regexes checked in a small window around a match;
    any hit suppresses that match (negation, question, legal notice).
    """
    id: str
    category: str
    subcategory: str
    severity: Severity
    description: str
    example: str
    regex: str
    exceptions: tuple[str, ...] = ()
    legal_basis: str = "Medical Service Act Art. 56(2)"
    default_confidence: float = 1.0


@dataclass(frozen=True)
class DisclaimerRule:
    phrase: str
    description: str


@dataclass(frozen=True)
class ContextException:
    type: str
    description: str
    examples: tuple[str, ...] = ()


@dataclass(frozen=True)
class DepartmentRule:
    id: str
    department: str
    name: str
    description: str
    severity: Severity
    legal_basis: str


@dataclass(frozen=True)
class SectionWeight:
    section: SectionType
    weight: float
    label: str


# ============================================================
# SHARED EXCEPTION REGEXES
# ============================================================

_NEGATION = r"\b(?:not|never|cannot|can't|don't|doesn't|won't|isn't|aren't|no\s+one)\b"
_QUESTION = r"\?"
_LEGAL_NOTICE = r"\b(?:prohibited|not\s+permitted|medical\s+service\s+act|is\s+illegal)\b"

_STANDARD_EXCEPTIONS = (_NEGATION, _QUESTION, _LEGAL_NOTICE)

_ART_56_2_2 = "Medical Service Act Art. 56(2)(2)"
_ART_56_2_3 = "Medical Service Act Art. 56(2)(3)"
_ART_56_2_4 = "Medical Service Act Art. 56(2)(4)"
_ART_56_2_8 = "Medical Service Act Art. 56(2)(8)"
_ART_56_2_13 = "Medical Service Act Art. 56(2)(13)"
_ART_27_3 = "Medical Service Act Art. 27(3)"


# ============================================================
# VIOLATION PATTERNS
# ============================================================

PATTERNS: tuple[Pattern, ...] = (
    # --- 01: Efficacy guarantees ---
    Pattern(
        id="P-56-01-001",
        category="efficacy_guarantee",
        subcategory="guaranteed_cure",
        severity=Severity.CRITICAL,
        description="Claims a guaranteed or 100% cure / success rate.",
        example="100% cure guaranteed for every patient",
        regex=(
            r"\b100\s?%\s*(?:cure[ds]?|success(?:ful)?|recovery|complete\s+recovery)\b"
            r"|\bguaranteed\s+(?:cure|recovery|success)\b"
            r"|\bcure\s+rate\s+of\s+100\s?%"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-01-002",
        category="efficacy_guarantee",
        subcategory="guaranteed_effect",
        severity=Severity.CRITICAL,
        description="Guarantees treatment effects or results.",
        example="100% effective, results guaranteed",
        regex=(
            r"\b100\s?%\s*(?:effective|effects?|results?|satisfaction)\b"
            r"|\b(?:results?|effects?)\s+(?:are\s+)?guaranteed\b"
            r"|\bguarantee[ds]?\s+(?:the\s+)?(?:results?|effects?|effectiveness)\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-01-003",
        category="efficacy_guarantee",
        subcategory="complete_cure",
        severity=Severity.MAJOR,
        description="Claims complete elimination or healing of a condition.",
        example="Completely eliminates acne scars",
        regex=(
            r"\b(?:complete(?:ly)?|total(?:ly)?|full(?:y)?)\s+"
            r"(?:cure[ds]?|heal(?:ed|s)?|eliminat(?:e|es|ed|ion)|remov(?:e|es|ed|al))\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-01-004",
        category="efficacy_guarantee",
        subcategory="single_session",
        severity=Severity.MAJOR,
        description="Promises results after a single session.",
        example="Visible lifting after just one session",
        regex=(
            r"\b(?:just|only)\s+(?:one|1|a\s+single)\s+(?:session|treatment|visit)\b"
            r"|\bsingle[\s-]session\s+(?:results?|cure)\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-01-005",
        category="efficacy_guarantee",
        subcategory="unsubstantiated_statistics",
        severity=Severity.MINOR,
        description="Quotes an unsubstantiated success or satisfaction percentage.",
        example="98% patient satisfaction",
        regex=(
            r"\b\d{2}(?:\.\d)?\s?%\s+(?:of\s+patients\s+)?"
            r"(?:patient\s+)?(?:improvement|improved|satisfaction|satisfied|success\s+rate)\b"
        ),
        exceptions=(_NEGATION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_3,
    ),

    # --- 02: Safety claims ---
    # No negation exception: "no side effects" IS the negation.
    Pattern(
        id="P-56-02-001",
        category="safety_claims",
        subcategory="no_side_effects",
        severity=Severity.CRITICAL,
        description="States there are no side effects.",
        example="Safe laser toning with no side effects",
        regex=(
            r"\b(?:no|zero|without(?:\s+any)?|free\s+(?:of|from))\s+side[\s-]?effects?\b"
            r"|\bside[\s-]?effect[\s-]free\b"
            r"|\balmost\s+no\s+side[\s-]?effects?\b"
        ),
        exceptions=(_QUESTION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_2,
    ),
    Pattern(
        id="P-56-02-002",
        category="safety_claims",
        subcategory="absolute_safety",
        severity=Severity.CRITICAL,
        description="Claims a procedure is absolutely or 100% safe.",
        example="A completely safe and risk-free procedure",
        regex=(
            r"\b(?:100\s?%|completely|perfectly|absolutely|totally)\s+safe\b"
            r"|\bzero\s+risk\b|\brisk[\s-]free\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_2,
    ),
    Pattern(
        id="P-56-02-003",
        category="safety_claims",
        subcategory="painless",
        severity=Severity.MAJOR,
        description="Claims a procedure is painless.",
        example="Painless implant surgery",
        regex=r"\b(?:painless|pain[\s-]free|no\s+pain|without\s+(?:any\s+)?pain)\b",
        exceptions=(_QUESTION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_2,
    ),
    Pattern(
        id="P-56-02-004",
        category="safety_claims",
        subcategory="no_scarring",
        severity=Severity.MAJOR,
        description="Claims surgery leaves no scars.",
        example="Scarless eyelid surgery",
        regex=(
            r"\b(?:no|zero|without)\s+(?:visible\s+)?scar(?:s|ring)?\b"
            r"|\bscar[\s-]?less\b|\bscar[\s-]free\b"
        ),
        exceptions=(_QUESTION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_2,
    ),
    Pattern(
        id="P-56-02-005",
        category="safety_claims",
        subcategory="no_downtime",
        severity=Severity.MINOR,
        description="Claims no recovery period is needed.",
        example="Zero downtime, back to work the same day",
        regex=(
            r"\b(?:no|zero)\s+(?:downtime|recovery\s+(?:time|period))\b"
            r"|\bimmediate\s+return\s+to\s+(?:daily\s+life|work)\b"
        ),
        exceptions=(_QUESTION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_2,
    ),

    # --- 03: Testimonials and before/after ---
    Pattern(
        id="P-56-03-001",
        category="testimonials",
        subcategory="before_after",
        severity=Severity.MAJOR,
        description="Uses before/after comparisons of treatment results.",
        example="See our before & after gallery",
        regex=r"\bbefore\s*(?:&|and|/|-|vs\.?)\s*after\b",
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-03-002",
        category="testimonials",
        subcategory="patient_reviews",
        severity=Severity.MAJOR,
        description="Advertises with patient testimonials or treatment reviews.",
        example="Read real patient reviews",
        regex=(
            r"\b(?:patient|customer|real)\s+(?:testimonials?|reviews?|stories)\b"
            r"|\b(?:treatment|surgery|procedure)\s+reviews?\b"
        ),
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-03-003",
        category="testimonials",
        subcategory="first_person_experience",
        severity=Severity.MINOR,
        description="First-person account of treatment experience.",
        example="After my treatment my skin is glowing",
        regex=r"\bafter\s+my\s+(?:treatment|surgery|procedure|sessions?)\b",
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_3,
    ),

    # --- 04: Superlatives and comparison ---
    Pattern(
        id="P-56-04-001",
        category="superlatives",
        subcategory="best_number_one",
        severity=Severity.MAJOR,
        description="Claims to be the best or number one.",
        example="No.1 dermatology clinic in Gangnam",
        regex=(
            r"(?:\bno\.?\s?1\b|\bnumber\s+one\b|#1\b)"
            r"|\bthe\s+(?:best|top)\s+(?:clinic|hospital|doctor|surgeon|specialist)s?\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_4,
    ),
    Pattern(
        id="P-56-04-002",
        category="superlatives",
        subcategory="only_first",
        severity=Severity.MAJOR,
        description="Claims to be the only or first provider.",
        example="The only clinic offering this treatment",
        regex=(
            r"\bthe\s+only\s+(?:clinic|hospital|doctor|center|centre)\b"
            r"|\bfirst\s+in\s+(?:korea|the\s+world|the\s+country|asia)\b"
            r"|\bworld[\s-]first\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_4,
    ),
    Pattern(
        id="P-56-04-003",
        category="superlatives",
        subcategory="comparison",
        severity=Severity.MAJOR,
        description="Compares itself favorably with other clinics.",
        example="Better results than other clinics",
        regex=(
            r"\b(?:unlike|better\s+than|superior\s+to)\s+(?:other|competing)\s+"
            r"(?:clinics?|hospitals?|doctors?)\b"
            r"|\bother\s+(?:clinics?|hospitals?)\s+(?:can't|cannot|fail)\b"
        ),
        exceptions=(_QUESTION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_4,
    ),
    Pattern(
        id="P-56-04-004",
        category="superlatives",
        subcategory="superlative_quality",
        severity=Severity.MINOR,
        description="Superlative quality claims about equipment or technique.",
        example="The most advanced technology in the country",
        regex=(
            r"\b(?:best|finest|highest|most\s+advanced|cutting[\s-]edge|state[\s-]of[\s-]the[\s-]art)"
            r"\s+(?:technology|equipment|technique|results?|quality)\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_4,
    ),

    # --- 05: Price inducement ---
    Pattern(
        id="P-56-05-001",
        category="price_inducement",
        subcategory="free_treatment",
        severity=Severity.MAJOR,
        description="Offers free treatment to induce patients.",
        example="Free Botox with every filler",
        regex=(
            r"\bfree\s+(?:treatments?|surgery|surgeries|procedures?|sessions?|botox|filler)\b"
        ),
        exceptions=(_NEGATION, _LEGAL_NOTICE),
        legal_basis=_ART_27_3,
    ),
    Pattern(
        id="P-56-05-002",
        category="price_inducement",
        subcategory="discount",
        severity=Severity.MAJOR,
        description="Inducement through discounts.",
        example="50% off all lifting procedures",
        regex=(
            r"\b\d{1,2}\s?%\s+(?:off|discount)\b"
            r"|\b(?:half[\s-]price|special\s+discount|limited[\s-]time\s+(?:offer|discount|price))\b"
        ),
        exceptions=(_NEGATION, _LEGAL_NOTICE),
        legal_basis=_ART_27_3,
    ),
    Pattern(
        id="P-56-05-003",
        category="price_inducement",
        subcategory="referral_reward",
        severity=Severity.MINOR,
        description="Rewards patients for referrals.",
        example="Refer a friend and get a free session",
        regex=r"\b(?:refer\s+a\s+friend|referral\s+(?:bonus|reward|discount))\b",
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_27_3,
    ),
    Pattern(
        id="P-56-05-004",
        category="price_inducement",
        subcategory="event_pricing",
        severity=Severity.MAJOR,
        description="Time-limited event pricing used as a lure.",
        example="Event price this month only",
        regex=(
            r"\b(?:event|promotion|promotional)\s+(?:price|pricing)\b"
            r"|\b(?:today|this\s+week|this\s+month)\s+only\b"
        ),
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_27_3,
    ),

    # --- 06: Unverified claims ---
    Pattern(
        id="P-56-06-001",
        category="unverified_claims",
        subcategory="miracle_technique",
        severity=Severity.MAJOR,
        description="Advertises a miracle or secret treatment.",
        example="Our secret formula erases wrinkles",
        regex=(
            r"\b(?:revolutionary|miracle|magic(?:al)?|secret)\s+"
            r"(?:treatments?|techniques?|procedures?|cures?|formulas?|methods?)\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-06-002",
        category="unverified_claims",
        subcategory="proprietary_method",
        severity=Severity.MINOR,
        description="Claims an exclusive or proprietary method.",
        example="Our exclusive technique",
        regex=r"\b(?:exclusive|proprietary)\s+(?:patented\s+)?(?:technique|method|technology|protocol)\b",
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-06-003",
        category="unverified_claims",
        subcategory="clinically_proven",
        severity=Severity.MAJOR,
        description="Claims clinical or scientific proof without evidence.",
        example="Clinically proven to remove fat",
        regex=r"\b(?:clinically|scientifically|medically)\s+(?:proven|verified|guaranteed)\b",
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),

    # --- 07: Endorsement ---
    Pattern(
        id="P-56-07-001",
        category="endorsement",
        subcategory="celebrity",
        severity=Severity.MAJOR,
        description="Uses celebrity endorsement.",
        example="The celebrities' favorite clinic",
        regex=(
            r"\b(?:celebrit(?:y|ies)|idols?|actress(?:es)?|actors?|influencers?)'?\s+"
            r"(?:choice|favou?rite|recommended|clinic|pick)\b"
            r"|\bchosen\s+by\s+(?:celebrities|stars|idols)\b"
        ),
        exceptions=(_NEGATION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_8,
    ),
    Pattern(
        id="P-56-07-002",
        category="endorsement",
        subcategory="authority",
        severity=Severity.MAJOR,
        description="Claims endorsement by doctors, professors or government.",
        example="Recommended by university professors",
        regex=(
            r"\b(?:recommended|endorsed)\s+by\s+"
            r"(?:doctors|experts|(?:university\s+)?professors|the\s+ministry)\b"
        ),
        exceptions=(_NEGATION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_8,
    ),

    # --- 08: Fear appeal and urgency ---
    Pattern(
        id="P-56-08-001",
        category="fear_appeal",
        subcategory="fear_inducement",
        severity=Severity.MAJOR,
        description="Induces fear of the consequences of not treating.",
        example="If left untreated it will become permanent",
        regex=(
            r"\bif\s+(?:you\s+)?(?:left|leave\s+it)\s+untreated\b"
            r"|\bbefore\s+it'?s\s+too\s+late\b"
            r"|\b(?:will|may|could)\s+become\s+(?:irreversible|permanent)\b"
        ),
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_13,
    ),
    Pattern(
        id="P-56-08-002",
        category="fear_appeal",
        subcategory="urgency",
        severity=Severity.MINOR,
        description="Creates urgency to book.",
        example="Hurry, only 3 slots left",
        regex=(
            r"\b(?:hurry|act\s+now|last\s+chance)\b"
            r"|\bonly\s+\d+\s+(?:slots?|spots?|seats?|places?)\s+left\b"
        ),
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_13,
    ),

    # --- 09: Permanence ---
    Pattern(
        id="P-56-09-001",
        category="permanence",
        subcategory="permanent_results",
        severity=Severity.MAJOR,
        description="Claims results are permanent.",
        example="Permanent results that last forever",
        regex=(
            r"\b(?:permanent|lifelong|life[\s-]?time|forever)\s+(?:results?|effects?)\b"
            r"|\blasts?\s+forever\b"
            r"|\bnever\s+(?:comes?\s+back|recurs?|returns?)\b"
        ),
        exceptions=(_QUESTION, _LEGAL_NOTICE),
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-09-002",
        category="permanence",
        subcategory="lifetime_guarantee",
        severity=Severity.CRITICAL,
        description="Offers a lifetime guarantee on a medical outcome.",
        example="Lifetime guarantee on every implant",
        regex=(
            r"\b(?:lifetime|life[\s-]long|permanent)\s+(?:guarantee|warranty)\b"
            r"|\bimplants?\s+(?:that\s+)?lasts?\s+(?:a\s+)?lifetime\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),

    # --- 10: Qualification misrepresentation ---
    Pattern(
        id="P-56-10-001",
        category="qualification",
        subcategory="specialized_clinic",
        severity=Severity.MINOR,
        description="Presents the clinic as specialized without specialist certification.",
        example="A specialized clinic for hair loss",
        regex=r"\b(?:specialized|specialty)\s+(?:clinic|hospital|center|centre)\b",
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-10-002",
        category="qualification",
        subcategory="specialty_name",
        severity=Severity.MINOR,
        description="Presents the clinic as a specialist in a named specialty.",
        example="Dermatology specialist clinic",
        regex=(
            r"\b(?:dermatology|plastic\s+surgery|ophthalmology|orthopedic|dental|skin|eye)"
            r"\s+specialists?\s+(?:clinic|hospital|center|centre)\b"
        ),
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_3,
    ),

    # --- 11: Certification and awards ---
    Pattern(
        id="P-56-11-001",
        category="certification",
        subcategory="certification_emphasis",
        severity=Severity.MINOR,
        description="Emphasizes an endorsement by a private society as proof of quality.",
        example="Certified by the Korean Aesthetic Society",
        regex=(
            r"\b(?:certified|accredited|recognized|endorsed)\s+by\s+(?:the\s+)?"
            r"(?:[a-z]+\s+){0,3}(?:association|society|academy|federation|council)\b"
        ),
        exceptions=(_LEGAL_NOTICE,),
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-11-002",
        category="certification",
        subcategory="awards_rankings",
        severity=Severity.MAJOR,
        description="Advertises awards or rankings.",
        example="Award-winning clinic, ranked first",
        regex=(
            r"\baward[\s-]winning\b"
            r"|\bwon\s+the\s+\w+\s+award\b"
            r"|\branked\s+(?:no\.?\s?1|first|#1)"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_8,
    ),

    # --- 12: Overstated results ---
    Pattern(
        id="P-56-12-001",
        category="overstated_results",
        subcategory="instant_results",
        severity=Severity.MAJOR,
        description="Promises instant or same-day results.",
        example="Instant results you can see in one day",
        regex=(
            r"\b(?:instant|immediate)\s+(?:results?|effects?|transformation)\b"
            r"|\bresults?\s+(?:in|within)\s+(?:just\s+)?(?:one|1|a)\s+(?:day|hour)\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-12-002",
        category="overstated_results",
        subcategory="rejuvenation",
        severity=Severity.MINOR,
        description="Claims a specific reversal of age.",
        example="Look 10 years younger",
        regex=r"\blook\s+\d{1,2}\s+years\s+younger\b|\breverse\s+(?:aging|ageing|the\s+clock)\b",
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-12-003",
        category="overstated_results",
        subcategory="perfect_results",
        severity=Severity.MAJOR,
        description="Promises perfect results or regeneration.",
        example="Perfect skin regeneration",
        regex=r"\bperfect(?:ly)?\s+(?:results?|restoration|regeneration|skin|shape)\b",
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),

    # --- 13: Disease claims ---
    Pattern(
        id="P-56-13-001",
        category="disease_claims",
        subcategory="chronic_cure",
        severity=Severity.CRITICAL,
        description="Claims to cure a chronic or serious disease.",
        example="We cure diabetes without medication",
        regex=(
            r"\bcure[sd]?\s+(?:your\s+)?(?:diabetes|hypertension|cancer|depression|arthritis|"
            r"asthma|atopic\s+dermatitis|acne|disc\s+herniation)\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-13-002",
        category="disease_claims",
        subcategory="guaranteed_vision",
        severity=Severity.CRITICAL,
        description="Guarantees a specific visual acuity after surgery.",
        example="Guaranteed 20/20 vision after LASIK",
        regex=(
            r"\bguaranteed?\s+(?:20/20|perfect)\s+vision\b"
            r"|\b(?:20/20|perfect)\s+vision\s+guaranteed\b"
        ),
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
    Pattern(
        id="P-56-13-003",
        category="disease_claims",
        subcategory="weight_loss_promise",
        severity=Severity.MAJOR,
        description="Promises a specific weight loss in a time frame.",
        example="Lose 10kg in 4 weeks",
        regex=r"\blose\s+\d+\s*(?:kg|lbs?|pounds|kilos)\s+(?:in|within)\s+\d+\s+(?:days?|weeks?)\b",
        exceptions=_STANDARD_EXCEPTIONS,
        legal_basis=_ART_56_2_3,
    ),
)

# Patterns whose severity a disclaimer can never reduce.
ABSOLUTE_VIOLATION_IDS: frozenset[str] = frozenset({
    "P-56-01-001",  # guaranteed cure
    "P-56-01-002",  # guaranteed effect
    "P-56-02-001",  # no side effects
})


# ============================================================
# NEGATIVE LIST
# ============================================================

NEGATIVE_LIST: dict[str, tuple[str, ...]] = {
    "equipment": (
        "Ulthera", "Thermage", "InMode", "Shurink", "Potenza", "Rejuran",
        "Juvelook", "PicoSure", "GentleMax", "Oligio", "Tensurma",
        "Ultraformer", "Clarity", "HIFU", "IPL", "RF",
    ),
    "medications": (
        "Botox", "Dysport", "Xeomin", "Nabota", "Botulax", "Juvederm",
        "Restylane", "Belotero", "lidocaine", "hyaluronic acid", "filler",
        "Sculptra", "Radiesse", "exosome", "PRP", "PDRN",
    ),
    "skincare": (
        "sunscreen", "moisturizer", "cleanser", "toner", "serum", "retinol",
        "vitamin C", "niacinamide", "ceramide", "AHA", "BHA", "EGF", "peptide",
    ),
    "medical_terms": (
        "dermatology", "plastic surgery", "dentistry", "ophthalmology",
        "obstetrics", "internal medicine", "orthopedics", "urology",
        "specialist", "medical director", "business registration number",
    ),
    "certifications": (
        "FDA approved", "FDA cleared", "FDA certified", "CE certified",
        "CE mark", "CE marking", "MFDS approved", "KFDA approved",
        "ISO certified", "ISO 13485", "GMP certified", "CGMP",
        "medical device approval", "patented", "patent registered",
        "TFDA approved", "ANVISA approved", "PMDA approved",
    ),
}

# Words that turn a negative-list mention into a claim: "free Botox" is an
# inducement, "Botox shot" is only a product name.
NEGATIVE_LIST_CLAIM_WORDS: tuple[str, ...] = (
    "free", "best", "cheapest", "lowest", "guarantee", "guaranteed",
    "perfect", "painless", "safest", "discount", "bonus", "unlimited",
)


# ============================================================
# DISCLAIMERS
# ============================================================

DISCLAIMER_RULES: tuple[DisclaimerRule, ...] = (
    DisclaimerRule("individual results may vary", "Individual variation notice"),
    DisclaimerRule("results may vary", "Variation notice"),
    DisclaimerRule("results vary by individual", "Variation notice"),
    DisclaimerRule("consult a specialist", "Specialist consultation advised"),
    DisclaimerRule("side effects may occur", "Possible side effects notice"),
    DisclaimerRule("results are not guaranteed", "No guarantee notice"),
    DisclaimerRule("medical service act article 56", "Legal compliance statement"),
    DisclaimerRule("depending on individual constitution", "Constitution variation notice"),
)


# ============================================================
# CERTIFICATION VOCABULARY (official-certification false positives)
# ============================================================

CERTIFICATION_WORDS: tuple[str, ...] = (
    "approved", "approval", "cleared", "certified", "certification",
    "authorized", "registered",
)

CERTIFICATION_ORGS: tuple[str, ...] = (
    "fda", "ce", "mfds", "kfda", "iso", "gmp", "cgmp", "tfda", "anvisa",
    "pmda", "ministry of health", "ministry of food and drug safety",
    "kdca",
)


# ============================================================
# NAVIGATION / MENU PHRASES
# ============================================================

NAVIGATION_PHRASES: tuple[str, ...] = (
    "directions", "location", "opening hours", "clinic hours", "book now",
    "book an appointment", "privacy policy", "terms of use", "sitemap",
    "online consultation", "reservation", "contact us",
)


# ============================================================
# SECTION WEIGHTS
# ============================================================

SECTION_WEIGHTS: dict[SectionType, SectionWeight] = {
    SectionType.TREATMENT: SectionWeight(SectionType.TREATMENT, 1.2, "Procedure / treatment page"),
    SectionType.EVENT: SectionWeight(SectionType.EVENT, 0.8, "Event / promotion page"),
    SectionType.FAQ: SectionWeight(SectionType.FAQ, 0.6, "FAQ"),
    SectionType.REVIEW: SectionWeight(SectionType.REVIEW, 0.7, "Reviews section"),
    SectionType.DOCTOR: SectionWeight(SectionType.DOCTOR, 1.0, "Doctor profile page"),
    SectionType.DEFAULT: SectionWeight(SectionType.DEFAULT, 1.0, "Unclassified"),
}


# ============================================================
# CONTEXT EXCEPTIONS (Proposer instructions)
# ============================================================

CONTEXT_EXCEPTIONS: tuple[ContextException, ...] = (
    ContextException(
        "NEGATION",
        "Negated claim: \"we do not guarantee 100% results\" is not a violation",
        ("We never guarantee a cure", "We cannot promise complete recovery"),
    ),
    ContextException(
        "QUESTION",
        "Question: \"Is it really 100% effective?\" is not a violation",
        ("Will it really cure my acne?", "Are there no side effects?"),
    ),
    ContextException(
        "QUOTATION",
        "Quoting another source is not a violation unless the quote itself advertises",
        ("The paper described it as \"effective\"",),
    ),
    ContextException(
        "LEGAL_NOTICE",
        "Legal notice: \"prohibited under Medical Service Act Article 56\" is not a violation",
        ("Such claims are prohibited by law",),
    ),
    ContextException(
        "NEGATIVE_EXAMPLE",
        "Example of what not to advertise is not a violation",
        ("Violation example: 100% cure", "This kind of wording is prohibited"),
    ),
    ContextException(
        "CONDITIONAL",
        "Possibility wording (\"may improve\") is not a violation on its own",
        ("Symptoms may improve", "Results can differ case by case"),
    ),
    ContextException(
        "NAVIGATION",
        "Navigation text (menus, headers, footers): lower confidence by 0.5",
        ("Home > Procedures > Laser", "Menu: Dermatology | Dentistry"),
    ),
    ContextException(
        "SIDE_EFFECT_NEGATION",
        "\"Almost no side effects\" IS a violation (negation + side effects)",
        ("Almost no side effects", "Without worrying about side effects"),
    ),
    ContextException(
        "OFFICIAL_CERTIFICATION",
        "Factual regulator approval (\"FDA approved device\") is not a violation",
        ("FDA approved equipment", "CE certified device", "ISO 13485 certified"),
    ),
)


# ============================================================
# DEPARTMENT RULES
# ============================================================

DEPARTMENT_NAMES: dict[str, str] = {
    "DERM": "Dermatology",
    "PLST": "Plastic Surgery",
    "DENT": "Dentistry",
    "ORNT": "Korean Medicine",
    "PSYC": "Psychiatry",
    "OPHT": "Ophthalmology",
    "ORTH": "Orthopedics",
    "INTL": "Internal Medicine",
    "GENL": "General",
}

DEPARTMENT_RULES: tuple[DepartmentRule, ...] = (
    DepartmentRule("DERM-001", "DERM", "Understated session count",
                   "Understates the number of laser sessions needed", Severity.MAJOR, _ART_56_2_3),
    DepartmentRule("DERM-002", "DERM", "Perfect skin regeneration",
                   "Guarantees complete skin regeneration", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("DERM-003", "DERM", "Acne cure guarantee",
                   "Guarantees acne cure or no recurrence", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("PLST-001", "PLST", "Natural result guarantee",
                   "Guarantees a natural-looking surgical outcome", Severity.MAJOR, _ART_56_2_3),
    DepartmentRule("PLST-002", "PLST", "No scar claim",
                   "Asserts surgery leaves no scars", Severity.MAJOR, _ART_56_2_2),
    DepartmentRule("PLST-003", "PLST", "Permanent effect claim",
                   "Claims surgical effects are permanent", Severity.MAJOR, _ART_56_2_3),
    DepartmentRule("DENT-001", "DENT", "Lifetime implant guarantee",
                   "Guarantees implants last a lifetime", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("DENT-002", "DENT", "Painless treatment",
                   "Asserts dental treatment is painless", Severity.MAJOR, _ART_56_2_2),
    DepartmentRule("DENT-003", "DENT", "Understated orthodontic period",
                   "Understates orthodontic treatment duration", Severity.MINOR, _ART_56_2_3),
    DepartmentRule("ORNT-001", "ORNT", "Herbal medicine guarantee",
                   "States herbal medicine effects as certain", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("ORNT-002", "ORNT", "Diet herbal medicine exaggeration",
                   "Exaggerates diet herbal medicine effects", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("ORNT-003", "ORNT", "Acupuncture exaggeration",
                   "Exaggerates acupuncture or chuna effects", Severity.MAJOR, _ART_56_2_3),
    DepartmentRule("PSYC-001", "PSYC", "Mental illness cure",
                   "Guarantees cure of a mental illness", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("PSYC-002", "PSYC", "Medication side-effect denial",
                   "Denies side effects of psychiatric medication", Severity.CRITICAL, _ART_56_2_2),
    DepartmentRule("OPHT-001", "OPHT", "Vision guarantee",
                   "Guarantees a specific visual acuity", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("OPHT-002", "OPHT", "Eye surgery side-effect denial",
                   "Denies side effects of eye surgery", Severity.CRITICAL, _ART_56_2_2),
    DepartmentRule("ORTH-001", "ORTH", "Joint/spine cure",
                   "Guarantees cure of joint or spine conditions", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("ORTH-002", "ORTH", "Manual therapy exaggeration",
                   "Exaggerates manual therapy effects", Severity.MAJOR, _ART_56_2_3),
    DepartmentRule("INTL-001", "INTL", "Chronic disease cure",
                   "Guarantees cure of diabetes or hypertension", Severity.CRITICAL, _ART_56_2_3),
    DepartmentRule("GENL-001", "GENL", "Check-up outcome guarantee",
                   "Guarantees a specific health check-up outcome", Severity.MAJOR, _ART_56_2_3),
)


# ============================================================
# CATALOG
# ============================================================

def normalize_term(text: str) -> str:
    """Lowercase and drop all whitespace. Used for negative-list comparison."""
    return re.sub(r"\s+", "", text.lower())


class RuleCatalog:
    """
    Read-only view over the catalog constants.

    Instantiated once as a module singleton. Tests may build their own
    instance with a reduced pattern set.
    """

    def __init__(
        self,
        patterns: Optional[Iterable[Pattern]] = None,
        absolute_ids: Optional[Iterable[str]] = None,
    ):
        self._patterns: tuple[Pattern, ...] = tuple(patterns) if patterns is not None else PATTERNS
        self._by_id = {p.id: p for p in self._patterns}
        self.absolute_ids = frozenset(absolute_ids) if absolute_ids is not None else ABSOLUTE_VIOLATION_IDS
        self.version = CATALOG_VERSION
        self._negative_terms = tuple(
            sorted({normalize_term(t) for terms in NEGATIVE_LIST.values() for t in terms})
        )
        self._cert_org_regex = re.compile(
            r"\b(?:" + "|".join(re.escape(o) for o in CERTIFICATION_ORGS) + r")\b",
            re.IGNORECASE,
        )

    @property
    def patterns(self) -> tuple[Pattern, ...]:
        return self._patterns

    @property
    def ids(self) -> frozenset[str]:
        return frozenset(self._by_id)

    def get(self, pattern_id: str) -> Optional[Pattern]:
        return self._by_id.get(pattern_id)

    def has(self, pattern_id: str) -> bool:
        return pattern_id in self._by_id

    def is_absolute(self, pattern_id: str) -> bool:
        return pattern_id in self.absolute_ids

    def by_category(self) -> dict[str, list[Pattern]]:
        grouped: dict[str, list[Pattern]] = {}
        for p in self._patterns:
            grouped.setdefault(p.category, []).append(p)
        return grouped

    @property
    def negative_terms(self) -> tuple[str, ...]:
        """Normalized negative-list terms."""
        return self._negative_terms

    def find_disclaimer(self, text: str) -> Optional[DisclaimerRule]:
        """First disclaimer rule whose phrase occurs in the text, if any."""
        lowered = text.lower()
        for rule in DISCLAIMER_RULES:
            if rule.phrase in lowered:
                return rule
        return None

    def has_certification_word(self, text: str) -> bool:
        lowered = text.lower()
        return any(word in lowered for word in CERTIFICATION_WORDS)

    def names_regulator(self, text: str) -> bool:
        return bool(self._cert_org_regex.search(text))

    @staticmethod
    def section_weight(section: SectionType) -> float:
        entry = SECTION_WEIGHTS.get(section)
        return entry.weight if entry else 1.0


catalog = RuleCatalog()
