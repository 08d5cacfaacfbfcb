"""
Unit tests for Deduplicator.
"""
import unittest
from datetime import date

from notescan.dedup import Deduplicator, identity_key
from notescan.types.models import Mention


def _mention(mention_id, segment="anxiety", position=16, patient_id="pt-1", dos=date(2024, 3, 1), job_id=None):
    return Mention(
        mention_id=mention_id,
        patient_id=patient_id,
        date_of_service=dos,
        segment=segment,
        position=position,
        job_id=job_id,
    )


class TestDeduplicator(unittest.TestCase):
    def setUp(self):
        self.dedup = Deduplicator()

    def test_same_phrase_different_positions_kept(self):
        candidates = [_mention("a", position=16), _mention("b", position=25)]
        unique, removed = self.dedup.dedupe(candidates)
        self.assertEqual(len(unique), 2)
        self.assertEqual(removed, 0)

    def test_exact_duplicates_removed(self):
        # e.g. the same note picked up by two workers after a retry
        candidates = [_mention("a"), _mention("a-retry", job_id="other"), _mention("c", position=40)]
        unique, removed = self.dedup.dedupe(candidates)
        self.assertEqual([m.mention_id for m in unique], ["a", "c"])
        self.assertEqual(removed, 1)

    def test_segment_case_is_ignored(self):
        candidates = [_mention("a", segment="Anxiety"), _mention("b", segment="ANXIETY")]
        unique, removed = self.dedup.dedupe(candidates)
        self.assertEqual(len(unique), 1)
        self.assertEqual(removed, 1)

    def test_different_patient_or_date_kept(self):
        candidates = [
            _mention("a"),
            _mention("b", patient_id="pt-2"),
            _mention("c", dos=date(2024, 3, 2)),
            _mention("d", segment="insomnia"),
        ]
        unique, removed = self.dedup.dedupe(candidates)
        self.assertEqual(len(unique), 4)
        self.assertEqual(removed, 0)

    def test_first_occurrence_wins_and_order_kept(self):
        candidates = [_mention("z", position=5), _mention("y", position=1), _mention("x", position=5)]
        unique, _ = self.dedup.dedupe(candidates)
        self.assertEqual([m.mention_id for m in unique], ["z", "y"])

    def test_empty(self):
        self.assertEqual(self.dedup.dedupe([]), ([], 0))

    def test_repeated_calls_are_independent(self):
        self.dedup.dedupe([_mention("a")])
        unique, removed = self.dedup.dedupe([_mention("a")])
        self.assertEqual(len(unique), 1)
        self.assertEqual(removed, 0)

    def test_identity_key(self):
        self.assertEqual(identity_key(_mention("a", segment="Anxiety")), ("pt-1", "anxiety", date(2024, 3, 1), 16))


if __name__ == "__main__":
    unittest.main()
