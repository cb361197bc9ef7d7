import unittest

from application.payouts import split_prize_pool, validate_split
from application.prize_pool import (
    FlatPrizePool,
    LinearPrizePool,
    TieredPrizePool,
    build_prize_pool_policy,
)


class PrizePoolPolicyTests(unittest.TestCase):
    def test_flat_ignores_member_count(self):
        policy = FlatPrizePool(amount=5000)

        self.assertEqual(policy.compute(0), 5000)
        self.assertEqual(policy.compute(10_000), 5000)

    def test_linear_grows_with_members(self):
        policy = LinearPrizePool(base=700, per_member=100)

        self.assertEqual(policy.compute(0), 700)
        self.assertEqual(policy.compute(12), 1900)
        self.assertEqual(policy.compute(-3), 700)

    def test_tiered_values_each_cohort(self):
        policy = TieredPrizePool(base=700, cohort_size=100, tiers=[100, 50, 25])

        self.assertEqual(policy.compute(50), 700 + 50 * 100)
        self.assertEqual(policy.compute(250), 700 + 100 * 100 + 100 * 50 + 50 * 25)
        # Past the last cohort every member is worth the last tier.
        self.assertEqual(policy.compute(400), 700 + 10_000 + 5_000 + 200 * 25)

    def test_tiered_rejects_bad_configuration(self):
        with self.assertRaises(ValueError):
            TieredPrizePool(base=0, cohort_size=0, tiers=[1])
        with self.assertRaises(ValueError):
            TieredPrizePool(base=0, cohort_size=10, tiers=[])

    def test_build_by_name(self):
        self.assertIsInstance(build_prize_pool_policy("flat", amount=1), FlatPrizePool)
        self.assertIsInstance(build_prize_pool_policy(" Linear "), LinearPrizePool)
        tiered = build_prize_pool_policy("tiered", base=0, cohort_size=10, tiers="5,1")
        self.assertEqual(tiered.compute(15), 55)

    def test_build_defaults_to_linear(self):
        policy = build_prize_pool_policy("")

        self.assertEqual(policy.compute(3), 1000)

    def test_unknown_policy_name_raises(self):
        with self.assertRaises(ValueError):
            build_prize_pool_policy("lottery")


class PrizeSplitTests(unittest.TestCase):
    def test_split_floors_each_share(self):
        self.assertEqual(split_prize_pool(1000, (8500, 1250, 250)), [850, 125, 25])
        self.assertEqual(split_prize_pool(999, (8500, 1250, 250)), [849, 124, 24])

    def test_split_never_exceeds_pool(self):
        for pool in (0, 1, 7, 701, 123_457):
            self.assertLessEqual(sum(split_prize_pool(pool, (8500, 1250, 250))), pool)

    def test_invalid_splits_are_rejected(self):
        for split in ((), (9000, 2000), (11000,), (5000, -1)):
            with self.assertRaises(ValueError):
                validate_split(split)


if __name__ == "__main__":
    unittest.main()
