"""
Tests for the per-permission rate limiter.
"""
from apps.core.rate_limiting import PermissionRateLimiter


class TestPermissionRateLimiter:
    """Tests for PermissionRateLimiter fixed windows."""

    WINDOW = 60
    NOW = 1_699_999_990.0  # 10 seconds into a window

    def test_allows_up_to_max_then_limits(self):
        results = [
            PermissionRateLimiter.hit('u1', 'reports.export', 3, self.WINDOW, now=self.NOW)
            for _ in range(4)
        ]

        assert [allowed for allowed, _ in results] == [True, True, True, False]
        assert results[-1][1] == 50

    def test_counters_are_per_user_and_permission(self):
        for _ in range(2):
            PermissionRateLimiter.hit('u1', 'reports.export', 2, self.WINDOW, now=self.NOW)

        assert PermissionRateLimiter.hit('u2', 'reports.export', 2, self.WINDOW, now=self.NOW)[0]
        assert PermissionRateLimiter.hit('u1', 'finances.manage', 2, self.WINDOW, now=self.NOW)[0]
        assert not PermissionRateLimiter.hit('u1', 'reports.export', 2, self.WINDOW, now=self.NOW)[0]

    def test_new_window_resets_counter(self):
        PermissionRateLimiter.hit('u1', 'reports.export', 1, self.WINDOW, now=self.NOW)
        assert not PermissionRateLimiter.hit('u1', 'reports.export', 1, self.WINDOW, now=self.NOW)[0]

        assert PermissionRateLimiter.hit('u1', 'reports.export', 1, self.WINDOW, now=self.NOW + self.WINDOW)[0]

    def test_reset_clears_current_window(self):
        PermissionRateLimiter.hit('u1', 'reports.export', 5, self.WINDOW, now=self.NOW)
        assert PermissionRateLimiter.get_count('u1', 'reports.export', self.WINDOW, now=self.NOW) == 1

        PermissionRateLimiter.reset('u1', 'reports.export', self.WINDOW, now=self.NOW)

        assert PermissionRateLimiter.get_count('u1', 'reports.export', self.WINDOW, now=self.NOW) == 0
