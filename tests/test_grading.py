import pytest

from grading import (annual_average, appreciation, class_statistics, rank, round2, subject_average,
                     term_average)


def test_round2_rounds_half_up():
    assert round2(10.125) == 10.13
    assert round2(12.0) == 12.0


def test_subject_average_weights_cc_and_exam():
    assert subject_average(12, 14) == pytest.approx(13.4)
    assert subject_average(cc=10, exam=10) == 10.0


def test_single_mark_counts_fully():
    assert subject_average(cc=15) == 15.0
    assert subject_average(exam=8.5) == 8.5


def test_no_mark_has_no_average():
    assert subject_average() is None


@pytest.mark.parametrize('cc, exam', [(21, 10), (-1, None), (None, 20.5), (True, None), ('12', None)])
def test_marks_out_of_range_are_rejected(cc, exam):
    with pytest.raises(ValueError):
        subject_average(cc, exam)


def test_term_average_is_coefficient_weighted():
    assert term_average([(13.4, 4), (10.0, 2)]) == pytest.approx(12.27)


def test_term_average_skips_subjects_without_average():
    assert term_average([(14.0, 3), (None, 5)]) == 14.0
    assert term_average([(None, 2)]) is None
    assert term_average([]) is None


def test_annual_average_uses_available_terms():
    assert annual_average({'T1': 10.0, 'T2': 12.0, 'T3': 14.0}) == 12.0
    assert annual_average({'T1': 10.0, 'T2': 13.0}) == 11.5
    assert annual_average({}) is None


@pytest.mark.parametrize('average, label', [
    (19.5, 'Excellent'),
    (18, 'Excellent'),
    (16, 'Très bien'),
    (15.99, 'Bien'),
    (12, 'Assez bien'),
    (10, 'Passable'),
    (8, 'Médiocre'),
    (7.99, 'Faible'),
])
def test_french_appreciation(average, label):
    assert appreciation(average, 'fr') == label


def test_english_appreciation_and_missing_average():
    assert appreciation(12.5, 'en') == 'Fairly good'
    assert appreciation(3, 'en') == 'Poor'
    assert appreciation(None, 'en') == 'Not evaluated'
    assert appreciation(None) == 'Non évalué'


def test_unknown_language_falls_back_to_french():
    assert appreciation(14, 'de') == 'Bien'


def test_competition_ranking_shares_ties_and_skips():
    ranks = rank({'a': 15.0, 'b': 12.0, 'c': 15.0, 'd': None, 'e': 10.0})
    assert ranks == {'a': 1, 'c': 1, 'b': 3, 'e': 4}


def test_class_statistics_ignore_missing_averages():
    assert class_statistics([10.0, 14.0, None, 12.0]) == {'min': 10.0, 'max': 14.0, 'mean': 12.0, 'size': 3}
    assert class_statistics([None]) == {'min': None, 'max': None, 'mean': None, 'size': 0}
