"""
Prompts package for FolioLedger.
Contains the portfolio optimization prompt templates handed to an external
research assistant.
"""

import os
from typing import Dict, Mapping

SUPPORTED_LANGUAGES = ("es", "en")

# Shown when the investor has not filled in a field
PLACEHOLDERS: Dict[str, Dict[str, str]] = {
    "es": {
        "horizon": "[Completar: Medio / Largo Plazo]",
        "goal": "[Completar: Crecimiento / Dividendos]",
        "restrictions": "Ninguna",
    },
    "en": {
        "horizon": "[Fill in: Medium / Long term]",
        "goal": "[Fill in: Growth / Dividends]",
        "restrictions": "None",
    },
}

# Cache for loaded prompts
_prompt_cache: Dict[str, str] = {}


def load_prompt(filename: str) -> str:
    """
    Load a prompt template from a text file next to this module.

    Args:
        filename: Name of the prompt file (e.g., 'optimization_prompt_es.txt')

    Returns:
        Prompt content as string
    """
    if filename in _prompt_cache:
        return _prompt_cache[filename]

    prompt_dir = os.path.dirname(os.path.abspath(__file__))
    filepath = os.path.join(prompt_dir, filename)

    try:
        with open(filepath, 'r', encoding='utf-8') as f:
            content = f.read()
            _prompt_cache[filename] = content
            return content
    except FileNotFoundError:
        raise FileNotFoundError(f"Prompt file not found: {filepath}")
    except Exception as e:
        raise RuntimeError(f"Error loading prompt file {filename}: {e}")


def get_optimization_template(language: str = "es") -> str:
    """
    Get the optimization prompt template for a language.

    Args:
        language: 'es' for Spanish, 'en' for English

    Raises:
        ValueError: for an unsupported language
    """
    if language not in SUPPORTED_LANGUAGES:
        raise ValueError(f"Unsupported prompt language: {language}")
    return load_prompt(f"optimization_prompt_{language}.txt")


def format_amount(value: float, currency: str, language: str = "es") -> str:
    """Money amount with two decimals in the language's number style."""
    text = f"{value:,.2f}"
    if language == "es":
        # 1,234.56 -> 1.234,56
        text = text.replace(",", "_").replace(".", ",").replace("_", ".")
    symbol = "€" if currency == "EUR" else currency
    return f"{text} {symbol}"


def render_optimization_prompt(context: Mapping[str, str], language: str = "es") -> str:
    """
    Fill the optimization template.

    Args:
        context: Values for the template fields (profile, horizon, goal,
            total_capital, cash, restrictions, allocation, target, asset_lines).
            Missing horizon/goal/restrictions get the language's placeholders.
        language: Template language
    """
    values = dict(PLACEHOLDERS[language]) if language in PLACEHOLDERS else {}
    values.update({k: v for k, v in context.items() if v})
    return get_optimization_template(language).format(**values)


def clear_prompt_cache():
    """Clear the prompt cache. Useful for reloading prompts during development."""
    _prompt_cache.clear()
