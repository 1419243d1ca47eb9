"""
Cameroonian grading rules: marks out of 20, continuous assessment (CC) and
exam components, coefficients per subject, three terms per year.
"""
import math

SCALE = 20
TERMS = ('T1', 'T2', 'T3')
TERM_WEIGHTS = {'T1': 1, 'T2': 1, 'T3': 1}
COMPONENT_WEIGHTS = {'CC': 0.3, 'EXAM': 0.7}

APPRECIATION_LABELS = {
    'fr': ['Excellent', 'Très bien', 'Bien', 'Assez bien', 'Passable', 'Médiocre', 'Faible'],
    'en': ['Excellent', 'Very good', 'Good', 'Fairly good', 'Average', 'Mediocre', 'Poor'],
}
APPRECIATION_THRESHOLDS = (18, 16, 14, 12, 10, 8)
NOT_EVALUATED = {'fr': 'Non évalué', 'en': 'Not evaluated'}


def round2(value):
    """Round half up to two decimals"""
    return math.floor(value * 100 + 0.5) / 100


def check_mark(value, scale=SCALE):
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0 or value > scale:
        raise ValueError(f"Invalid mark: {value} (expected 0..{scale} or None)")


def subject_average(cc=None, exam=None, weights=None, scale=SCALE):
    """Average of one subject for one term.

    Both marks are weighted CC 30% / EXAM 70%. A mark on its own counts for
    100%. With no mark the subject has no average.
    """
    check_mark(cc, scale)
    check_mark(exam, scale)
    weights = weights or COMPONENT_WEIGHTS
    if cc is None and exam is None:
        return None
    if cc is not None and exam is not None:
        return round2(cc * weights['CC'] + exam * weights['EXAM'])
    return round2(cc if cc is not None else exam)


def term_average(subject_averages):
    """Coefficient weighted mean over (average, coefficient) pairs"""
    total = 0.0
    total_coef = 0
    for average, coefficient in subject_averages:
        if average is None:
            continue
        total += average * coefficient
        total_coef += coefficient
    if total_coef == 0:
        return None
    return round2(total / total_coef)


def annual_average(term_averages, term_weights=None):
    term_weights = term_weights or TERM_WEIGHTS
    total = 0.0
    total_weight = 0
    for term, weight in term_weights.items():
        average = term_averages.get(term)
        if average is None:
            continue
        total += average * weight
        total_weight += weight
    if total_weight == 0:
        return None
    return round2(total / total_weight)


def appreciation(average, language='fr'):
    language = language if language in APPRECIATION_LABELS else 'fr'
    if average is None:
        return NOT_EVALUATED[language]
    labels = APPRECIATION_LABELS[language]
    for index, threshold in enumerate(APPRECIATION_THRESHOLDS):
        if average >= threshold:
            return labels[index]
    return labels[-1]


def class_statistics(averages):
    valid = [a for a in averages if a is not None]
    if not valid:
        return {'min': None, 'max': None, 'mean': None, 'size': 0}
    return {
        'min': min(valid),
        'max': max(valid),
        'mean': round2(sum(valid) / len(valid)),
        'size': len(valid),
    }


def rank(averages):
    """Standard competition ranking of {key: average}.

    Ties share a rank and the next rank skips (1, 2, 2, 4). Keys without an
    average are left out.
    """
    ordered = sorted(((avg, key) for key, avg in averages.items() if avg is not None),
                     key=lambda item: item[0], reverse=True)
    ranks = {}
    previous = None
    current_rank = 0
    for position, (avg, key) in enumerate(ordered, start=1):
        if avg != previous:
            current_rank = position
            previous = avg
        ranks[key] = current_rank
    return ranks
