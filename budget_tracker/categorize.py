import re
import unicodedata


UNCATEGORIZED_GROUP = "Misc"
UNCATEGORIZED_CATEGORY = "Untracked"

FINGERPRINT_WORDS = 3
OVERLAP_MIN_WORD_LENGTH = 4
OVERLAP_STRONG_WORD_LENGTH = 7
OVERLAP_MIN_SHARED_WORDS = 2

FINGERPRINT_STOPWORDS = {
    # corporate suffixes
    "inc",
    "llc",
    "ltd",
    "corp",
    "corporation",
    "co",
    "company",
    "plc",
    "gmbh",
    # articles
    "the",
    "a",
    "an",
    # prepositions and joiners
    "of",
    "at",
    "in",
    "on",
    "for",
    "to",
    "from",
    "by",
    "with",
    "and",
}

KEYWORD_CATEGORIES = [
    {
        "keywords": ["netflix", "spotify", "hulu", "disney+", "apple.com/bill", "icloud", "openai", "github", "adobe", "dropbox", "youtube premium"],
        "group": "Fixed Costs",
        "category": "Subscriptions",
    },
    {
        "keywords": ["verizon", "at&t", "t-mobile", "comcast", "xfinity", "spectrum", "internet"],
        "group": "Fixed Costs",
        "category": "Internet/Phone",
    },
    {
        "keywords": ["electric", "water bill", "gas company", "pg&e", "con edison", "utility", "utilities"],
        "group": "Fixed Costs",
        "category": "Utilities",
    },
    {
        "keywords": ["rent payment", "landlord", "mortgage", "property management"],
        "group": "Fixed Costs",
        "category": "Rent/Mortgage",
    },
    {
        "keywords": ["geico", "state farm", "allstate", "progressive", "insurance"],
        "group": "Fixed Costs",
        "category": "Insurance",
    },
    {
        "keywords": ["whole foods", "trader joe", "safeway", "kroger", "aldi", "costco", "grocery", "market"],
        "group": "Fixed Costs",
        "category": "Groceries",
    },
    {
        "keywords": ["uber", "lyft", "shell", "chevron", "exxon", "mobil", "parking", "transit", "metro", "fuel"],
        "group": "Fixed Costs",
        "category": "Transportation",
    },
    {
        "keywords": ["starbucks", "coffee", "cafe", "restaurant", "pizza", "burger", "mcdonald", "chipotle", "doordash", "grubhub", "uber eats", "bar & grill"],
        "group": "Guilt-Free Spending",
        "category": "Dining Out",
    },
    {
        "keywords": ["amazon", "target", "walmart", "best buy", "ebay", "etsy", "ikea", "store"],
        "group": "Guilt-Free Spending",
        "category": "Shopping",
    },
    {
        "keywords": ["cinema", "theater", "theatre", "ticketmaster", "steam", "playstation", "xbox", "concert"],
        "group": "Guilt-Free Spending",
        "category": "Entertainment",
    },
    {
        "keywords": ["gym", "fitness", "pharmacy", "cvs", "walgreens", "yoga"],
        "group": "Guilt-Free Spending",
        "category": "Health & Fitness",
    },
    {
        "keywords": ["payroll", "salary", "direct dep"],
        "group": "Income",
        "category": "Salary",
    },
    {
        "keywords": ["transfer", "zelle", "venmo", "paypal"],
        "group": "Misc",
        "category": "Transfers",
    },
    {
        "keywords": ["overdraft", "service charge", "monthly fee", "atm fee", "interest charge", "bank fee"],
        "group": "Misc",
        "category": "Bank Fees",
    },
]


def normalize_description(value):
    normalized = unicodedata.normalize("NFKD", (value or "").strip().lower())
    no_accents = "".join(ch for ch in normalized if not unicodedata.combining(ch))
    return re.sub(r"\s+", " ", no_accents)


def normalize_text(value):
    normalized = re.sub(r"[^\w\s]", " ", normalize_description(value))
    return re.sub(r"\s+", " ", normalized).strip()


def merchant_fingerprint(value):
    without_digits = re.sub(r"\d+", " ", normalize_text(value))
    tokens = [token for token in without_digits.replace("_", " ").split() if token not in FINGERPRINT_STOPWORDS]
    return " ".join(tokens[:FINGERPRINT_WORDS])


def significant_words(value):
    return {word for word in re.findall(r"\w+", normalize_description(value)) if len(word) >= OVERLAP_MIN_WORD_LENGTH}


def uncategorized_guess():
    return {"category_id": None, "group": UNCATEGORIZED_GROUP, "category": UNCATEGORIZED_CATEGORY, "source": "uncategorized"}


def is_uncategorized(group, category):
    return (group or "").strip().lower() == UNCATEGORIZED_GROUP.lower() and (
        (category or "").strip().lower() == UNCATEGORIZED_CATEGORY.lower()
    )


def categorized_history(history):
    for item in history:
        if item.get("category_id") is None:
            continue
        if is_uncategorized(item.get("group"), item.get("category")):
            continue
        yield item


def guess_from_history(item, source):
    return {
        "category_id": item["category_id"],
        "group": item.get("group") or "",
        "category": item.get("category") or "",
        "source": source,
    }


def match_merchant_fingerprint(description, history, categories, keyword_table=None):
    fingerprint = merchant_fingerprint(description)
    if not fingerprint:
        return None
    for item in categorized_history(history):
        if merchant_fingerprint(item.get("description")) == fingerprint:
            return guess_from_history(item, "history_merchant")
    return None


def words_overlap(left, right):
    shared = left & right
    if any(len(word) >= OVERLAP_STRONG_WORD_LENGTH for word in shared):
        return True
    return len(shared) >= OVERLAP_MIN_SHARED_WORDS


def match_word_overlap(description, history, categories, keyword_table=None):
    words = significant_words(description)
    if not words:
        return None
    for item in categorized_history(history):
        if words_overlap(words, significant_words(item.get("description"))):
            return guess_from_history(item, "history_overlap")
    return None


def find_category_by_name(name, categories):
    wanted = normalize_description(name)
    if not wanted:
        return None
    for category in categories:
        candidate = normalize_description(category.get("name"))
        if candidate and (wanted in candidate or candidate in wanted):
            return category
    return None


def match_keyword_table(description, history, categories, keyword_table=None):
    normalized = normalize_description(description)
    if not normalized:
        return None
    for entry in keyword_table if keyword_table is not None else KEYWORD_CATEGORIES:
        if not any(keyword in normalized for keyword in entry["keywords"]):
            continue
        category = find_category_by_name(entry["category"], categories)
        if category is None:
            return {"category_id": None, "group": entry["group"], "category": entry["category"], "source": "keyword"}
        return {
            "category_id": category["id"],
            "group": category.get("group") or entry["group"],
            "category": category["name"],
            "source": "keyword",
        }
    return None


# Personal history outranks the static table; keep this order.
CATEGORIZATION_STRATEGIES = [
    match_merchant_fingerprint,
    match_word_overlap,
    match_keyword_table,
]


def categorize_description(description, history, categories, keyword_table=None):
    """Best-guess category for ``description``.

    ``history`` must be ordered most recent first; each item carries
    ``description``, ``category_id``, ``category`` and ``group``. ``categories``
    is the user's ``{id, name, group}`` list. The first strategy that returns a
    guess wins; otherwise the uncategorized sentinel is returned.
    """
    history = list(history or [])
    categories = list(categories or [])
    for strategy in CATEGORIZATION_STRATEGIES:
        guess = strategy(description, history, categories, keyword_table)
        if guess is not None:
            return guess
    return uncategorized_guess()


def find_fallback_category(categories):
    for category in categories:
        if normalize_description(category.get("name")) == UNCATEGORIZED_CATEGORY.lower():
            return category
    for category in categories:
        if normalize_description(category.get("group")) == UNCATEGORIZED_GROUP.lower():
            return category
    return None
