"""
Built-in feature catalog
"""

from typing import List

from .models import FeatureCategory, FeatureDefinition


def builtin_features() -> List[FeatureDefinition]:
    """Definitions registered when the feature manager starts"""
    return [
        FeatureDefinition(
            id="case-converter",
            name="Text Case Converter",
            description="Transform selected text between multiple case formats",
            category=FeatureCategory.TEXT_TOOLS,
            default_enabled=True,
            default_settings={
                "defaultCase": "title",
                "autoCopyToClipboard": False,
                "showInContextMenu": True,
            },
        ),
        FeatureDefinition(
            id="word-counter",
            name="Character/Word Counter",
            description="Provide detailed statistics about selected text",
            category=FeatureCategory.TEXT_TOOLS,
            default_enabled=True,
            default_settings={
                "displayMode": "mini",
                "autoActivateOnTextFields": True,
                "readingSpeed": 200,
                "speakingRate": 150,
            },
        ),
        FeatureDefinition(
            id="translator",
            name="Translator",
            description="Translate selected text or entire webpages",
            category=FeatureCategory.TEXT_TOOLS,
            optional_permissions=["tabs"],
            host_permissions=["<all_urls>"],
            default_settings={
                "defaultTargetLanguage": "en",
                "translationStyle": "formal",
                "alwaysTranslateDomains": [],
            },
        ),
        FeatureDefinition(
            id="dictionary",
            name="Dictionary Lookup",
            description="Provide definitions, synonyms, and usage examples for selected words",
            category=FeatureCategory.TEXT_TOOLS,
            default_settings={
                "primaryDictionary": "english",
                "enableDoubleClickLookup": True,
                "displayStyle": "tooltip",
            },
        ),
        FeatureDefinition(
            id="writing-assistant",
            name="Writing Assistant",
            description="Check grammar, style, and readability of written content",
            category=FeatureCategory.TEXT_TOOLS,
            default_settings={
                "writingStyle": "formal",
                "strictnessLevel": "moderate",
                "autoCheck": True,
            },
        ),
        FeatureDefinition(
            id="page-summarizer",
            name="AI Page Summarizer",
            description="Generate concise summaries of web articles and long content",
            category=FeatureCategory.CONTENT_ANALYSIS,
            optional_permissions=["tabs"],
            host_permissions=["<all_urls>"],
            default_settings={
                "summaryStyle": "standard",
                "summaryLength": "medium",
                "humanize": True,
            },
        ),
    ]
