import subprocess
import sys
import unittest
from unittest.mock import patch

import schedule

import scheduler


class SchedulerTestCase(unittest.TestCase):
    """Tests for the daily temp upload sweep job."""

    def tearDown(self):
        schedule.clear()

    @patch('scheduler.subprocess.run')
    def test_runs_sweep_script_with_current_interpreter(self, mock_run):
        scheduler.run_cleanup_temp_uploads('owner-1')
        mock_run.assert_called_once_with(
            [sys.executable, scheduler.CLEANUP_SCRIPT, '--user-id', 'owner-1'], check=True
        )
        self.assertTrue(scheduler.CLEANUP_SCRIPT.endswith('cleanup_temp_uploads.py'))

    @patch('scheduler.subprocess.run')
    def test_failed_sweep_is_logged_not_raised(self, mock_run):
        for error in (subprocess.CalledProcessError(2, 'cleanup'), FileNotFoundError('python')):
            with self.subTest(error=error):
                mock_run.side_effect = error
                with self.assertLogs('scheduler', level='ERROR'):
                    scheduler.run_cleanup_temp_uploads('owner-1')

    @patch.dict('os.environ', {}, clear=True)
    def test_main_needs_a_user(self):
        with self.assertLogs('scheduler', level='ERROR'):
            self.assertEqual(scheduler.main(), 1)
        self.assertEqual(schedule.get_jobs(), [])


if __name__ == '__main__':
    unittest.main()
