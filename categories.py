"""
Categorical Variables for the Contextual Book Recommender

Contains the fixed vocabularies used by the context encoder. Moods, situations
and goals carry small semantic vectors so that related values (e.g. 'relaxed'
and 'peaceful') land near each other in context space.
"""

# Semantic width of each mood / situation / goal block
SEMANTIC_DIM = 8

# Mood encoding with semantic relationships
# Axes: energy, curiosity, risk, focus, calm, comfort, reflection, depth
MOOD_MAPPINGS = {
    'motivated': [1.0, 0.8, 0.6, 0.2, 0.0, 0.0, 0.0, 0.0],
    'curious': [0.6, 1.0, 0.4, 0.8, 0.2, 0.0, 0.0, 0.0],
    'relaxed': [0.0, 0.2, 0.0, 0.0, 1.0, 0.8, 0.6, 0.2],
    'adventurous': [0.8, 0.6, 1.0, 0.4, 0.0, 0.0, 0.0, 0.0],
    'nostalgic': [0.2, 0.4, 0.0, 0.6, 0.8, 0.6, 1.0, 0.4],
    'focused': [0.8, 0.9, 0.4, 0.6, 0.0, 0.0, 0.0, 0.0],
    'excited': [0.9, 0.7, 0.8, 0.3, 0.0, 0.0, 0.0, 0.0],
    'contemplative': [0.2, 0.8, 0.0, 0.4, 0.6, 0.4, 0.8, 0.6],
    'energetic': [0.9, 0.6, 0.7, 0.4, 0.0, 0.0, 0.0, 0.0],
    'peaceful': [0.0, 0.1, 0.0, 0.0, 0.9, 0.8, 0.7, 0.3],
    'inspired': [0.7, 0.9, 0.5, 0.8, 0.2, 0.0, 0.0, 0.0],
    'thoughtful': [0.3, 0.7, 0.2, 0.5, 0.4, 0.3, 0.6, 0.4],
}

SITUATION_MAPPINGS = {
    'commuting': [1.0, 0.0, 0.6, 0.4, 0.0, 0.0, 0.0, 0.0],
    'before_bed': [0.0, 0.0, 0.0, 0.0, 1.0, 0.8, 0.0, 0.0],
    'weekend': [0.0, 1.0, 0.0, 0.0, 0.6, 0.4, 0.8, 0.0],
    'lunch_break': [0.6, 0.0, 0.8, 0.6, 0.2, 0.0, 0.0, 0.0],
    'traveling': [0.8, 0.2, 0.4, 0.6, 0.0, 0.0, 0.0, 0.0],
    'studying': [0.2, 0.0, 0.2, 0.0, 0.0, 0.0, 0.0, 1.0],
    'break_time': [0.4, 0.6, 0.6, 0.4, 0.4, 0.2, 0.6, 0.0],
    'waiting': [0.6, 0.2, 0.4, 0.8, 0.2, 0.0, 0.0, 0.0],
    'vacation': [0.2, 0.8, 0.2, 0.2, 0.8, 0.6, 0.9, 0.0],
    'work_day': [0.4, 0.0, 0.6, 0.2, 0.0, 0.0, 0.0, 0.6],
    'evening': [0.0, 0.4, 0.0, 0.0, 0.6, 1.0, 0.4, 0.0],
    'morning': [0.6, 0.2, 0.4, 0.8, 0.0, 0.0, 0.0, 0.4],
}

GOAL_MAPPINGS = {
    'entertainment': [1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
    'learning': [0.0, 1.0, 0.8, 0.6, 0.0, 0.0, 0.0, 0.0],
    'professional': [0.0, 0.8, 1.0, 0.4, 0.0, 0.0, 0.0, 0.0],
    'inspiration': [0.4, 0.6, 0.2, 1.0, 0.0, 0.0, 0.0, 0.0],
    'relaxation': [0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0],
    'perspective': [0.2, 0.8, 0.4, 0.8, 0.0, 1.0, 0.0, 0.0],
    'skill_building': [0.0, 0.9, 0.8, 0.4, 0.0, 0.0, 0.0, 0.0],
    'escape': [0.8, 0.0, 0.0, 0.2, 0.8, 0.0, 0.0, 0.0],
    'self_improvement': [0.2, 0.7, 0.6, 0.8, 0.0, 0.4, 0.0, 0.0],
    'creativity': [0.4, 0.5, 0.0, 0.9, 0.0, 0.6, 0.0, 0.0],
    'productivity': [0.0, 0.6, 0.9, 0.6, 0.0, 0.0, 0.0, 0.0],
    'mindfulness': [0.0, 0.2, 0.0, 0.4, 0.9, 0.8, 0.0, 0.0],
}

# Time of day categories
TIME_OF_DAY_CATEGORIES = ['morning', 'afternoon', 'evening', 'night']

# Representative hour used when only the time-of-day bucket is known
TIME_OF_DAY_HOURS = {
    'morning': 9,
    'afternoon': 14,
    'evening': 19,
    'night': 23,
}

# User action categories (for interactions)
ACTION_CATEGORIES = ['click', 'save', 'unsave', 'rate']

# Recommendation strategies the bandit chooses between
STRATEGY_CATEGORIES = [
    'semantic_similarity',
    'contextual_mood',
    'trending_popular',
    'collaborative_filtering',
    'personalized_mix',
]

STRATEGY_NAMES = {
    'semantic_similarity': 'Content-Based',
    'contextual_mood': 'Mood-Based',
    'trending_popular': 'Trending',
    'collaborative_filtering': 'Collaborative',
    'personalized_mix': 'Personalized Mix',
}

# Words associated with each mood / goal, used for tag matching
MOOD_KEYWORDS = {
    'motivated': ['uplifting', 'inspiring', 'driven', 'empowering'],
    'curious': ['thought-provoking', 'mysterious', 'surprising', 'informative'],
    'relaxed': ['cozy', 'gentle', 'calm', 'light-hearted'],
    'adventurous': ['adventurous', 'thrilling', 'epic', 'fast-paced'],
    'nostalgic': ['nostalgic', 'reflective', 'bittersweet', 'classic'],
    'focused': ['practical', 'rigorous', 'informative'],
    'excited': ['thrilling', 'fast-paced', 'epic'],
    'contemplative': ['reflective', 'philosophical', 'thought-provoking'],
    'energetic': ['fast-paced', 'funny', 'adventurous'],
    'peaceful': ['calm', 'gentle', 'cozy', 'hopeful'],
    'inspired': ['inspiring', 'hopeful', 'uplifting'],
    'thoughtful': ['reflective', 'philosophical', 'emotional'],
}

GOAL_KEYWORDS = {
    'entertainment': ['funny', 'thrilling', 'fun'],
    'learning': ['informative', 'science', 'history'],
    'professional': ['business', 'leadership', 'practical'],
    'inspiration': ['inspiring', 'uplifting', 'biography'],
    'relaxation': ['cozy', 'gentle', 'calm'],
    'perspective': ['philosophical', 'thought-provoking', 'culture'],
    'skill_building': ['practical', 'guide', 'informative'],
    'escape': ['fantasy', 'adventurous', 'epic'],
    'self_improvement': ['self-help', 'habits', 'inspiring'],
    'creativity': ['art', 'imaginative', 'design'],
    'productivity': ['habits', 'practical', 'business'],
    'mindfulness': ['meditation', 'calm', 'reflective'],
}

# Category mappings for easy access
CATEGORY_MAPPINGS = {
    'mood': sorted(MOOD_MAPPINGS),
    'situation': sorted(SITUATION_MAPPINGS),
    'goal': sorted(GOAL_MAPPINGS),
    'time_of_day': TIME_OF_DAY_CATEGORIES,
    'action': ACTION_CATEGORIES,
    'strategy': STRATEGY_CATEGORIES,
}

SEMANTIC_MAPPINGS = {
    'mood': MOOD_MAPPINGS,
    'situation': SITUATION_MAPPINGS,
    'goal': GOAL_MAPPINGS,
}


def get_categories(category_name: str):
    """
    Get category list by name.

    Raises:
        KeyError: If category name not found
    """
    if category_name not in CATEGORY_MAPPINGS:
        raise KeyError(f"Category '{category_name}' not found. Available categories: {list(CATEGORY_MAPPINGS.keys())}")

    return CATEGORY_MAPPINGS[category_name]


def get_semantic_vector(category_name: str, value: str):
    """Return the semantic vector for a mood/situation/goal value, or None if unknown."""
    mapping = SEMANTIC_MAPPINGS.get(category_name)
    if mapping is None:
        raise KeyError(f"Category '{category_name}' has no semantic mapping.")
    if not value:
        return None
    return mapping.get(value.strip().lower())


def is_valid_category_value(category_name: str, value: str) -> bool:
    """Check if a value is valid for a given category."""
    try:
        categories = get_categories(category_name)
        return value in categories
    except KeyError:
        return False
