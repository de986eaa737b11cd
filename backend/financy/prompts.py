from __future__ import annotations

SYSTEM_PROMPT = (
    "You are a financial transaction parser. "
    "Respond only with valid JSON objects. "
    "Do not include any additional text, explanations, or formatting."
)

EXTRACTION_EXAMPLES = (
    '"Paid $50 for groceries at Walmart" -> {"amount": 50, "currency": "USD", "type": "expense", '
    '"description": "groceries", "category": "Food & Dining", "merchantName": "Walmart", "confidence": 0.95}\n'
    '"Received $1000 salary" -> {"amount": 1000, "currency": "USD", "type": "income", '
    '"description": "salary", "category": "Income", "merchantName": null, "confidence": 0.9}\n'
    '"Spent R$25 on lunch" -> {"amount": 25, "currency": "BRL", "type": "expense", '
    '"description": "lunch", "category": "Food & Dining", "merchantName": null, "confidence": 0.85}\n'
    '"Coffee $5 and gas $40" -> {"transactions": ['
    '{"amount": 5, "currency": "USD", "type": "expense", "description": "coffee", '
    '"category": "Food & Dining", "merchantName": null, "confidence": 0.9}, '
    '{"amount": 40, "currency": "USD", "type": "expense", "description": "gas", '
    '"category": "Transportation", "merchantName": null, "confidence": 0.9}]}'
)


def build_extraction_prompt(text: str, default_currency: str, supported_currencies: list[str]) -> str:
    currencies = " | ".join(f'"{code}"' for code in supported_currencies)
    return (
        f'Extract transaction details from this natural language text: "{text}"\n\n'
        "Respond with ONLY a valid JSON object with these exact fields:\n"
        "{\n"
        '  "amount": number (positive value),\n'
        f'  "currency": {currencies} (detect from context or default to {default_currency}),\n'
        '  "type": "income" | "expense" | "transfer",\n'
        '  "description": "brief description",\n'
        '  "category": "category name or null",\n'
        '  "merchantName": "merchant name or null",\n'
        '  "confidence": number between 0.0 and 1.0\n'
        "}\n"
        'If the text mentions several separate transactions, respond with {"transactions": [...]} '
        "holding one such object per transaction.\n\n"
        "Guidelines:\n"
        "- Extract the numeric amount (convert words to numbers if needed)\n"
        "- Detect currency symbols ($, R$, €, £) or currency codes\n"
        "- Determine if it's income (received, earned, got, salary, etc.) or expense (spent, paid, bought, etc.)\n"
        "- Create a concise description without redundant words\n"
        "- Suggest appropriate category if obvious from context\n"
        "- Extract merchant name if mentioned\n"
        "- Set confidence based on clarity (0.9+ for clear, 0.7+ for good, 0.5+ for unclear)\n\n"
        f"Examples:\n{EXTRACTION_EXAMPLES}\n\n"
        "Remember: Respond with ONLY the JSON object, no additional text."
    )


def build_receipt_prompt(default_currency: str, supported_currencies: list[str]) -> str:
    return (
        "Read this receipt image and extract the purchase it records. "
        "Pick the final payable amount (labelled total, grand total or balance due). "
        "NEVER invent digits. "
        f"Return ISO currency codes from {', '.join(supported_currencies)}; "
        f"use {default_currency} when the receipt shows none. "
        "Respond with ONLY a JSON object with the fields amount, currency, type, "
        "description, category, merchantName and confidence."
    )
