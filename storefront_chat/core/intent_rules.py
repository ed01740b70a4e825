from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterator

INTENT_GREETING = "greeting"
INTENT_BROWSE = "browse"
INTENT_SEARCH = "search"
INTENT_PRODUCT_INFO = "product_info"
INTENT_COMPARE = "compare"
INTENT_PRICE_CHECK = "price_check"
INTENT_AVAILABILITY = "availability"
INTENT_RECOMMENDATION = "recommendation"
INTENT_DECISION_HELP = "decision_help"
INTENT_PURCHASE = "purchase"
INTENT_CONTACT = "contact"
INTENT_SHIPPING = "shipping"
INTENT_RETURNS = "returns"
INTENT_AFFIRMATIVE = "affirmative"
INTENT_NEGATIVE = "negative"
INTENT_FOLLOWUP = "followup"
INTENT_THANKS = "thanks"
INTENT_GOODBYE = "goodbye"
INTENT_UNCLEAR = "unclear"

INTENTS = (
    INTENT_GREETING,
    INTENT_BROWSE,
    INTENT_SEARCH,
    INTENT_PRODUCT_INFO,
    INTENT_COMPARE,
    INTENT_PRICE_CHECK,
    INTENT_AVAILABILITY,
    INTENT_RECOMMENDATION,
    INTENT_DECISION_HELP,
    INTENT_PURCHASE,
    INTENT_CONTACT,
    INTENT_SHIPPING,
    INTENT_RETURNS,
    INTENT_AFFIRMATIVE,
    INTENT_NEGATIVE,
    INTENT_FOLLOWUP,
    INTENT_THANKS,
    INTENT_GOODBYE,
    INTENT_UNCLEAR,
)


@dataclass(frozen=True)
class IntentRule:
    intent: str
    patterns: tuple[re.Pattern[str], ...]
    keywords: dict[str, tuple[str, ...]] = field(default_factory=dict)
    is_terminal: bool = False
    requires_context: bool = False

    def all_keywords(self) -> Iterator[str]:
        for words in self.keywords.values():
            yield from words


def _compile(*patterns: str) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(pattern, flags=re.IGNORECASE) for pattern in patterns)


INTENT_RULES: tuple[IntentRule, ...] = (
    IntentRule(
        intent=INTENT_GREETING,
        patterns=_compile(
            r"^(hej|hi|hello|hey|hallå|tjena|tja)[\s!.,?]*$",
            r"^god\s*(dag|morgon|kväll|eftermiddag)",
            r"^good\s*(morning|evening|day|afternoon)",
        ),
        keywords={
            "sv": ("hej", "hallå", "tjena", "tja", "hejsan", "goddag", "god morgon", "god kväll"),
            "en": ("hi", "hello", "hey", "good morning", "good evening", "good day", "howdy"),
        },
        is_terminal=True,
    ),
    IntentRule(
        intent=INTENT_BROWSE,
        patterns=_compile(
            r"visa\s*(mig|något|produkter|era)",
            r"vad\s*(har\s*ni|finns|säljer)",
            r"show\s*me",
            r"what\s*(do\s*you\s*have|have\s*you\s*got)",
        ),
        keywords={
            "sv": ("visa", "vad har ni", "vad finns", "sortiment", "utbud", "kolla", "titta"),
            "en": ("show me", "what do you have", "browse", "selection", "catalog", "look around"),
        },
    ),
    IntentRule(
        intent=INTENT_SEARCH,
        patterns=_compile(
            r"letar\s*(efter|du)",
            r"söker\s*(efter|en|ett)?",
            r"har\s*(ni|du|er)\s+\w+",
            r"finns\s*(det|den|de)",
            r"looking\s*for",
            r"do\s*you\s*(have|sell|carry)",
            r"i\s*(need|want)\s*(a|an|some)?",
        ),
        keywords={
            "sv": ("letar", "söker", "finns det", "har ni", "behöver", "vill ha"),
            "en": ("looking for", "searching", "do you have", "need", "want", "find"),
        },
    ),
    IntentRule(
        intent=INTENT_PRODUCT_INFO,
        patterns=_compile(
            r"berätta\s*(mer|om)",
            r"vad\s*(är|innehåller)",
            r"hur\s*(fungerar|används|gör)",
            r"tell\s*me\s*(more|about)",
            r"what\s*(is|are)\s*(it|this|that|they)",
            r"how\s*(does|do)\s*(it|this|that)",
        ),
        keywords={
            "sv": ("berätta", "mer om", "vad är", "hur fungerar", "material", "storlek", "mått", "detaljer", "info"),
            "en": ("tell me", "more about", "what is", "how does", "material", "size", "dimensions", "details", "info"),
        },
    ),
    IntentRule(
        intent=INTENT_COMPARE,
        patterns=_compile(
            r"skillnad(en)?\s*(mellan|på)",
            r"jämför",
            r"vilken\s*(är|av)\s*(bäst|bättre)",
            r"difference\s*(between|of)",
            r"compare",
            r"which\s*(one|is)\s*(better|best)",
            r"\w+\s+(eller|or)\s+\w+",
        ),
        keywords={
            "sv": ("skillnad", "jämför", "eller", "bättre", "sämre", "vs", "kontra", "mellan"),
            "en": ("difference", "compare", "or", "better", "worse", "vs", "versus", "between"),
        },
    ),
    IntentRule(
        intent=INTENT_PRICE_CHECK,
        patterns=_compile(
            r"vad\s*(kostar|är\s*priset)",
            r"hur\s*mycket\s*(kostar|är)",
            r"(pris|priset)\s*(på|för)?",
            r"how\s*much\s*(does|is|for)",
            r"what('s|\s*is)\s*the\s*price",
            r"\d+\s*(kr|sek|kronor|\$|€)",
        ),
        keywords={
            "sv": ("pris", "kostar", "kosta", "billig", "dyr", "budget", "kr", "kronor"),
            "en": ("price", "cost", "cheap", "expensive", "budget", "how much", "dollar", "euro"),
        },
    ),
    IntentRule(
        intent=INTENT_AVAILABILITY,
        patterns=_compile(
            r"finns\s*(den|det|de)?\s*(i\s*lager|kvar|hemma)",
            r"(på|i)\s*lager",
            r"slut\s*(på|i)",
            r"(is|are)\s*(it|they|this)\s*(in\s*stock|available)",
            r"do\s*you\s*have\s*(any|it)\s*(in\s*stock|left)",
            r"out\s*of\s*stock",
        ),
        keywords={
            "sv": ("lager", "finns", "slut", "tillgänglig", "hemma", "har kvar"),
            "en": ("stock", "available", "out of", "in stock", "have any", "left"),
        },
    ),
    IntentRule(
        intent=INTENT_RECOMMENDATION,
        patterns=_compile(
            r"vad\s*(rekommenderar|föreslår|tipsar)",
            r"kan\s*du\s*(rekommendera|föreslå|tipsa)",
            r"vad\s*(är|passar)\s*(bäst|bra)",
            r"what\s*(do\s*you\s*)?(recommend|suggest)",
            r"can\s*you\s*(recommend|suggest)",
            r"what('s|\s*is)\s*(best|good)\s*(for|if)",
            r"looking\s*for\s*(a\s*)?(gift|present)",
            r"present\s*(till|för|to|for)",
        ),
        keywords={
            "sv": ("rekommenderar", "föreslår", "tips", "råd", "bäst", "populär", "passar", "present", "gåva"),
            "en": ("recommend", "suggest", "tips", "advice", "best", "popular", "suit", "gift", "present"),
        },
    ),
    IntentRule(
        intent=INTENT_DECISION_HELP,
        patterns=_compile(
            r"vilken\s*(ska|bör|borde)\s*jag",
            r"(ska|bör|borde)\s*jag\s*(ta|köpa|välja)",
            r"hjälp\s*mig\s*(välja|bestämma)",
            r"which\s*(one|should)",
            r"should\s*i\s*(get|buy|take|choose)",
            r"help\s*me\s*(choose|decide|pick)",
        ),
        keywords={
            "sv": ("vilken", "ska jag", "borde jag", "hjälp mig välja", "bestämma"),
            "en": ("which one", "should i", "help me choose", "decide", "pick"),
        },
    ),
    IntentRule(
        intent=INTENT_PURCHASE,
        patterns=_compile(
            r"vill\s*(köpa|beställa|ha)",
            r"(jag)?\s*tar\s*(den|det|de)",
            r"lägg\s*(i|till)\s*(varukorg|korg)",
            r"hur\s*(köper|beställer)\s*jag",
            r"i('ll|\s*will)\s*(take|buy|get)\s*(it|this|that)",
            r"i\s*want\s*(to\s*)?(buy|order|purchase)",
            r"add\s*to\s*(cart|basket)",
            r"how\s*(do\s*i|can\s*i)\s*(buy|order|purchase)",
        ),
        keywords={
            "sv": ("köpa", "beställa", "ta den", "vill ha", "lägg i", "varukorg", "kassa"),
            "en": ("buy", "order", "take it", "want it", "add to", "cart", "checkout", "purchase"),
        },
    ),
    IntentRule(
        intent=INTENT_CONTACT,
        patterns=_compile(
            r"kontakt(a|uppgifter)?",
            r"(telefon|mail|email|e-post)",
            r"öppet(tider)?",
            r"(hur|kan)\s*(jag)?\s*(nå|ringa|maila)",
            r"contact\s*(info|details|you)?",
            r"(phone|email)\s*(number|address)?",
            r"opening\s*(hours|times)",
            r"how\s*(can|do)\s*i\s*(reach|contact|call)",
        ),
        keywords={
            "sv": ("kontakt", "telefon", "mail", "email", "adress", "öppettider", "ring", "nå"),
            "en": ("contact", "phone", "email", "address", "hours", "call", "reach"),
        },
    ),
    IntentRule(
        intent=INTENT_SHIPPING,
        patterns=_compile(
            r"frakt(kostnad|pris)?",
            r"hur\s*(lång|snabb)?\s*(leverans|tid)",
            r"kan\s*(ni|du)\s*(skicka|leverera)",
            r"shipping\s*(cost|price|time)?",
            r"how\s*(long|fast)\s*(is\s*)?(delivery|shipping)",
            r"do\s*you\s*(ship|deliver)",
        ),
        keywords={
            "sv": ("frakt", "leverans", "skicka", "porto", "leverera", "skickas", "hämta"),
            "en": ("shipping", "delivery", "ship", "postage", "deliver", "pickup"),
        },
    ),
    IntentRule(
        intent=INTENT_RETURNS,
        patterns=_compile(
            r"retur(nera|policy)?",
            r"ånger(rätt)?",
            r"kan\s*(jag)?\s*(returnera|byta|ångra)",
            r"return\s*(policy)?",
            r"can\s*i\s*(return|exchange|get\s*a\s*refund)",
            r"(money\s*back|refund)",
        ),
        keywords={
            "sv": ("retur", "returnera", "ångra", "ångerrätt", "byta", "garanti", "reklamation"),
            "en": ("return", "refund", "exchange", "guarantee", "warranty", "money back"),
        },
    ),
    IntentRule(
        intent=INTENT_AFFIRMATIVE,
        patterns=_compile(
            r"^(ja|jo|japp|yes|yeah|yep|yup)[\s!.,]*$",
            r"^(ok|okej|okay|sure|visst|absolut)[\s!.,]*$",
            r"^(bra|fint|perfekt|toppen|great|perfect|fine)[\s!.,]*$",
            r"^(gärna|tack|please)[\s!.,]*$",
            r"^(den|det|this|that|it)[\s!.,]*$",
            r"sounds?\s*good",
            r"^(jag)?\s*(vill|tar)\s*(det|den|gärna)[\s!.,]*$",
        ),
        keywords={
            "sv": (
                "ja", "jo", "japp", "absolut", "visst", "okej", "ok", "jag tar",
                "den", "det", "gärna", "bra", "perfekt", "fint", "toppen",
            ),
            "en": (
                "yes", "yeah", "yep", "sure", "absolutely", "ok", "okay",
                "great", "perfect", "fine", "good", "sounds good",
            ),
        },
        requires_context=True,
    ),
    IntentRule(
        intent=INTENT_NEGATIVE,
        patterns=_compile(
            r"^(nej|no|nope|nah)[\s!.,]*$",
            r"^(inte?\s*(det|den|så)|not\s*(that|this|it))[\s!.,]*$",
            r"^något\s*annat",
            r"something\s*(else|different)",
            r"^(annan|annat|andra|other|another)[\s!.,]*$",
        ),
        keywords={
            "sv": ("nej", "nope", "inte", "inget", "ingen", "aldrig", "annat", "annan", "andra"),
            "en": ("no", "nope", "not", "none", "never", "different", "other", "something else"),
        },
        requires_context=True,
    ),
    IntentRule(
        intent=INTENT_FOLLOWUP,
        patterns=_compile(
            r"berätta\s*mer",
            r"vad\s*mer",
            r"(finns|har)\s*(det|ni)\s*(mer|fler|annat)",
            r"tell\s*me\s*more",
            r"what\s*else",
            r"anything\s*else",
            r"show\s*me\s*more",
        ),
        keywords={
            "sv": ("mer", "berätta mer", "vad mer", "annat", "fler", "också", "dessutom"),
            "en": ("more", "tell me more", "what else", "other", "also", "anything else"),
        },
    ),
    IntentRule(
        intent=INTENT_THANKS,
        patterns=_compile(
            r"^tack[\s!.,]*$",
            r"tack\s*(så\s*mycket|för)",
            r"^thanks?[\s!.,]*$",
            r"thank\s*you",
        ),
        keywords={
            "sv": ("tack", "tackar", "uppskattar", "snällt"),
            "en": ("thanks", "thank you", "appreciate", "cheers"),
        },
        is_terminal=True,
    ),
    IntentRule(
        intent=INTENT_GOODBYE,
        patterns=_compile(
            r"^(hejdå|adjö|bye|goodbye)[\s!.,]*$",
            r"^(vi)?\s*ses[\s!.,]*$",
            r"^(ha\s*det\s*(bra|så\s*bra)|take\s*care)[\s!.,]*$",
            r"have\s*a\s*(nice|good|great)\s*day",
        ),
        keywords={
            "sv": ("hejdå", "adjö", "ses", "vi ses", "ha det bra"),
            "en": ("bye", "goodbye", "see you", "take care", "have a nice day"),
        },
        is_terminal=True,
    ),
)

RULES_BY_INTENT: dict[str, IntentRule] = {rule.intent: rule for rule in INTENT_RULES}

INTENT_DESCRIPTIONS: dict[str, str] = {
    INTENT_GREETING: "User is greeting",
    INTENT_BROWSE: "User wants to browse/explore products",
    INTENT_SEARCH: "User is searching for something specific",
    INTENT_PRODUCT_INFO: "User wants more information about a product",
    INTENT_COMPARE: "User is comparing options",
    INTENT_PRICE_CHECK: "User is asking about price",
    INTENT_AVAILABILITY: "User is checking availability/stock",
    INTENT_RECOMMENDATION: "User wants a recommendation",
    INTENT_DECISION_HELP: "User needs help deciding",
    INTENT_PURCHASE: "User wants to purchase",
    INTENT_CONTACT: "User wants contact information",
    INTENT_SHIPPING: "User is asking about shipping/delivery",
    INTENT_RETURNS: "User is asking about returns/refunds",
    INTENT_AFFIRMATIVE: "User is saying yes/confirming",
    INTENT_NEGATIVE: "User is saying no/declining",
    INTENT_FOLLOWUP: "User wants to continue/know more",
    INTENT_THANKS: "User is thanking",
    INTENT_GOODBYE: "User is saying goodbye",
    INTENT_UNCLEAR: "Intent unclear - needs clarification",
}

# Labels the completion model may answer with, mapped onto the fixed vocabulary.
LLM_INTENT_MAP: dict[str, str] = {
    **{intent: intent for intent in INTENTS},
    "soft_affirmative": INTENT_AFFIRMATIVE,
    "soft_negative": INTENT_NEGATIVE,
    "price_objection": INTENT_PRICE_CHECK,
    "off_topic": INTENT_UNCLEAR,
    "complaint": INTENT_CONTACT,
    "urgency": INTENT_SEARCH,
}
