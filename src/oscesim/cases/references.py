"""
Reference Library — Textbook citations for feedback items.

Missed rubric items and learning pearls are cited against the standard
texts below, matched by topic keyword.
"""

from __future__ import annotations

DEFAULT_CITATION = (
    "Dravyaguna Vigyana by Acharya Priyavrata Sharma, Chaukhambha Bharti Academy, Varanasi"
)

# (topic keywords, citation); first match wins
TOPIC_CITATIONS: list[tuple[tuple[str, ...], str]] = [
    (("agni", "appetite", "digestion"),
     "Dravyaguna Vigyana by Acharya Priyavrata Sharma, Chaukhambha Bharti Academy, Varanasi"),
    (("nadi", "pulse"),
     "Dravyagunavijnana by Prof. D.S. Lucas, Chaukhambha Visvabharati, Varanasi"),
    (("jwara", "fever", "pitta"),
     "Bhavaprakasha by Sri Brahmasankara Mishra, Chaukhamba Sanskrit Series Office, Varanasi"),
    (("socrates", "history", "onset"),
     "Introduction to Dravyaguna by Acharya Priyavrata Sharma, Chaukhambha Orientalia, Varanasi"),
    (("physical exam", "examination"),
     "Dravyagunavijnana by Prof. D.S. Lucas, Chaukhambha Visvabharati, Varanasi"),
    (("lab", "test", "investigation"),
     "Essentials of Medical Pharmacology by K.D. Tripathi, Jaypee Brothers Medical Publishers"),
    (("diagnosis", "differential"),
     "Ayurvedic Pharmacology & Therapeutic Uses of Medicinal Plants by Vaidya V.M. Gogte, "
     "Chaukhambha Publications"),
    (("management", "treatment", "therapy"),
     "Classical Uses of Medicinal Plants by Acharya Priyavrata Sharma, Chaukhamba Visvabharati, Varanasi"),
    (("communication", "rapport", "counsel"),
     "Classical Uses of Medicinal Plants by Acharya Priyavrata Sharma, Chaukhamba Visvabharati, Varanasi"),
    (("child", "pediatric", "kaumarabhritya"),
     "Kaumarabhritya (Ayurvedic Paediatrics) by Dr. A.K. Sharma, Chaukhambha Orientalia, Varanasi"),
]


def citation_for_topic(topic: str) -> str:
    """Return the citation for the first keyword found in `topic`."""
    lowered = topic.lower()
    for keywords, citation in TOPIC_CITATIONS:
        if any(keyword in lowered for keyword in keywords):
            return citation
    return DEFAULT_CITATION
