"""Customer- and prompt-facing strings, keyed by language tag.

Business logic never branches on language; it asks this module for a string by key.
Unknown languages fall back to English, unknown keys raise KeyError.
"""
from __future__ import annotations

from typing import Any

DEFAULT_LANGUAGE = "en"

_LANGUAGE_ALIASES = {
    "sv": "sv",
    "sv-se": "sv",
    "swedish": "sv",
    "svenska": "sv",
    "en": "en",
    "en-us": "en",
    "en-gb": "en",
    "english": "en",
}

_STRINGS: dict[str, dict[str, str]] = {
    "en": {
        "list_separator": ", ",
        "or": " or ",
        "summary.products": "Products discussed: {products}",
        "summary.question": 'Last question asked: "{question}"',
        "summary.budget": "Budget: {budget}",
        "summary.framing": "Price preference: {framing}",
        "summary.gift": "Buying a gift",
        "summary.gift_for": "Buying a gift for {recipient}",
        "summary.for_whom": "Buying for {recipient}",
        "summary.interests": "Interests: {interests}",
        "summary.stage": "Stage: {stage}",
        "summary.sentiment": "Customer mood: {sentiment}",
        "followup.yes_to_question": 'User said YES to: "{referent}"',
        "followup.no_to_question": 'User said NO to: "{referent}"',
        "followup.product_confirmation": "User confirmed interest in: {referent}",
        "followup.product_rejection": "User declined: {referent}",
        "followup.product_followup": "User asking about previously mentioned product(s): {referent}",
        "followup.continuation_products": "User wants more info after discussing: {referent}",
        "followup.continuation": "User wants to continue the conversation",
        "stage.exploring": "just arrived, needs are still unclear",
        "stage.interested": "interested in a product or category",
        "stage.comparing": "comparing several products",
        "stage.deciding": "close to a decision, ready for a recommendation",
        "stage.ready_to_buy": "wants to buy",
        "stage.seeking_help": "needs help with service questions",
        "stage.closing": "ending the conversation",
        "discovery.minimum_exchanges": (
            "IMPORTANT: You've only had {turn_count} exchange(s). Have at least {min_exchanges} exchanges "
            "before recommending products. Ask more questions to understand the customer's needs!"
        ),
        "discovery.insufficient_needs": (
            "IMPORTANT: You don't know enough about the customer's needs yet. Ask about: {missing}. "
            "DO NOT RECOMMEND PRODUCTS YET - ask questions instead!"
        ),
        "needs.recipient": "who the product is for",
        "needs.occasion": "occasion/reason",
        "needs.budget": "budget",
        "needs.preference": "preferences/style",
        "retrieval.low_confidence": (
            "No product matched the request closely. Say so honestly and ask a clarifying question "
            "instead of guessing."
        ),
        "contact.email": "email {value}",
        "contact.phone": "call {value}",
        "contact.fallback": "contact us through our website",
        "handoff.customer_request": (
            "Of course! You can {contact} and our team will help you personally. "
            "They're best equipped to assist you!"
        ),
        "handoff.frustration": (
            "I understand this can be frustrating, and I really want you to get the right help. "
            "You can {contact} for personal assistance - they'll definitely be able to help you better."
        ),
        "handoff.low_confidence": (
            "I want to be honest - I'm not entirely sure I can help you with this. To make sure you get "
            "the best help possible, I'd recommend you {contact}."
        ),
        "handoff.repeated_failure": (
            "It seems like I'm having trouble helping you with what you need. Let me connect you with "
            "someone who can - you can {contact} and they'll take good care of you."
        ),
        "handoff.account_issue": (
            "For questions about orders, deliveries, or your account, you'll need to speak with our team "
            "directly. You can {contact} and they'll help you with everything!"
        ),
        "handoff.off_topic": (
            "That's a bit outside what I can help with, but our team can surely assist you! "
            "You can reach them at {contact}."
        ),
        "handoff.soft_suggestion": (
            "If you'd prefer to speak with someone personally, that's totally fine too - just let me know!"
        ),
    },
    "sv": {
        "list_separator": ", ",
        "or": " eller ",
        "summary.products": "Produkter som diskuterats: {products}",
        "summary.question": 'Senaste frågan: "{question}"',
        "summary.budget": "Budget: {budget}",
        "summary.framing": "Prisläge: {framing}",
        "summary.gift": "Köper en present",
        "summary.gift_for": "Köper en present till {recipient}",
        "summary.for_whom": "Köper till {recipient}",
        "summary.interests": "Intressen: {interests}",
        "summary.stage": "Fas: {stage}",
        "summary.sentiment": "Kundens humör: {sentiment}",
        "followup.yes_to_question": 'Kunden svarade JA på: "{referent}"',
        "followup.no_to_question": 'Kunden svarade NEJ på: "{referent}"',
        "followup.product_confirmation": "Kunden bekräftade intresse för: {referent}",
        "followup.product_rejection": "Kunden tackade nej till: {referent}",
        "followup.product_followup": "Kunden frågar om tidigare nämnd(a) produkt(er): {referent}",
        "followup.continuation_products": "Kunden vill veta mer efter att ha diskuterat: {referent}",
        "followup.continuation": "Kunden vill fortsätta samtalet",
        "stage.exploring": "har precis kommit, behoven är ännu oklara",
        "stage.interested": "intresserad av en produkt eller kategori",
        "stage.comparing": "jämför flera produkter",
        "stage.deciding": "nära ett beslut, redo för en rekommendation",
        "stage.ready_to_buy": "vill köpa",
        "stage.seeking_help": "behöver hjälp med servicefrågor",
        "stage.closing": "avslutar samtalet",
        "discovery.minimum_exchanges": (
            "VIKTIGT: Du har bara haft {turn_count} utbyte(n). Ha minst {min_exchanges} utbyten innan du "
            "rekommenderar produkter. Ställ fler frågor för att förstå kundens behov!"
        ),
        "discovery.insufficient_needs": (
            "VIKTIGT: Du vet inte tillräckligt om kundens behov ännu. Fråga om: {missing}. "
            "REKOMMENDERA INGA PRODUKTER ÄNNU - ställ frågor istället!"
        ),
        "needs.recipient": "vem produkten är till",
        "needs.occasion": "tillfälle/anledning",
        "needs.budget": "budget",
        "needs.preference": "preferenser/stil",
        "retrieval.low_confidence": (
            "Ingen produkt matchade förfrågan särskilt väl. Säg det ärligt och ställ en följdfråga "
            "i stället för att gissa."
        ),
        "contact.email": "mejla {value}",
        "contact.phone": "ring {value}",
        "contact.fallback": "kontakta oss via hemsidan",
        "handoff.customer_request": (
            "Självklart! Du kan {contact} så hjälper vårt team dig personligen. "
            "De är bäst på att hjälpa dig vidare!"
        ),
        "handoff.frustration": (
            "Jag förstår att det här kan vara frustrerande, och jag vill verkligen att du får rätt hjälp. "
            "Du kan {contact} för personlig assistans - de kan definitivt hjälpa dig bättre."
        ),
        "handoff.low_confidence": (
            "Jag vill vara ärlig - jag är inte helt säker på att jag kan hjälpa dig med det här. För att du "
            "ska få bästa möjliga hjälp, rekommenderar jag att du {contact}."
        ),
        "handoff.repeated_failure": (
            "Det verkar som jag har svårt att hjälpa dig med det du behöver. Låt mig koppla dig till någon "
            "som kan - du kan {contact} så tar de hand om dig."
        ),
        "handoff.account_issue": (
            "För frågor om beställningar, leveranser eller ditt konto behöver du prata med vårt team direkt. "
            "Du kan {contact} så hjälper de dig med allt!"
        ),
        "handoff.off_topic": (
            "Det där ligger lite utanför vad jag kan hjälpa till med, men vårt team kan säkert hjälpa dig! "
            "Du når dem via {contact}."
        ),
        "handoff.soft_suggestion": (
            "Om du hellre vill prata med någon personligen är det också helt okej - säg bara till!"
        ),
    },
}


def resolve_language(language: str | None) -> str:
    key = str(language or "").strip().lower()
    return _LANGUAGE_ALIASES.get(key, DEFAULT_LANGUAGE)


def text(key: str, language: str | None = None, **params: Any) -> str:
    table = _STRINGS[resolve_language(language)]
    template = table[key] if key in table else _STRINGS[DEFAULT_LANGUAGE][key]
    return template.format(**params) if params else template


def join_list(items: list[str], language: str | None = None) -> str:
    return text("list_separator", language).join(items)
