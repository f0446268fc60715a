"""
Unit tests for the head-turn challenge
"""
import math

import pytest

from conftest import LEFT_TURN_YAWS, yaw_stream
from liveness_controller.analysis.challenge import ChallengeResponseVerifier, verify_movement
from liveness_controller.config import ChallengeSettings
from liveness_controller.errors import SampleOrderError, SessionStateError
from liveness_controller.state import ChallengeDirection, ChallengePhase, ChallengeStatus


def run(direction, samples, *, started_at=0.0):
    verifier = ChallengeResponseVerifier()
    verifier.start(direction, now=started_at)
    statuses = [verifier.process(yaw, timestamp) for yaw, timestamp in samples]
    return verifier, statuses


class TestChallengeMilestones:
    """Test P1, P2 and P3 detection on the yaw stream"""

    def test_left_turn_passes(self):
        verifier, statuses = run(ChallengeDirection.TURN_LEFT, yaw_stream(LEFT_TURN_YAWS))
        session = verifier.session

        assert statuses[-1] is ChallengeStatus.PASS
        assert all(status is ChallengeStatus.IN_PROGRESS for status in statuses[:-1])
        assert session.phase is ChallengePhase.DONE
        assert session.yaw_p1_to_p2 == [3.0, 10.0, 20.0, 26.0]
        assert session.yaw_p2_to_p3 == [26.0, 15.0, 10.0, 4.0]

    def test_mirrored_right_turn_passes(self):
        verifier, statuses = run(ChallengeDirection.TURN_RIGHT, yaw_stream(LEFT_TURN_YAWS, sign=-1.0))

        assert statuses[-1] is ChallengeStatus.PASS
        assert verifier.session.yaw_p1_to_p2[0] == -3.0

    def test_fast_turn_skipping_the_centered_zone_passes(self):
        """P1 still fires when the first outward sample is already past 5 deg"""
        verifier, statuses = run(ChallengeDirection.TURN_LEFT, yaw_stream([0.0, 8.0, 18.0, 27.0, 15.0, 4.0]))

        assert statuses[1] is ChallengeStatus.IN_PROGRESS
        assert verifier.session.yaw_p1_to_p2 == [8.0, 18.0, 27.0]
        assert verifier.session.yaw_p2_to_p3 == [27.0, 15.0, 4.0]
        assert statuses[-1] is ChallengeStatus.PASS

    def test_resting_then_turning_passes(self):
        yaws = [2.0, 2.0, 2.0, 8.0, 14.0, 20.0, 27.0, 18.0, 11.0, 3.0]
        verifier, statuses = run(ChallengeDirection.TURN_LEFT, yaw_stream(yaws))

        assert verifier.session.yaw_p1_to_p2[0] == 8.0
        assert statuses[-1] is ChallengeStatus.PASS

    def test_phases_advance_in_order(self):
        verifier = ChallengeResponseVerifier()
        verifier.start(ChallengeDirection.TURN_LEFT, now=0.0)
        phases = []
        for yaw, timestamp in yaw_stream(LEFT_TURN_YAWS):
            verifier.process(yaw, timestamp)
            phases.append(verifier.session.phase)

        assert phases[:2] == [ChallengePhase.AWAITING_P1] * 2
        assert phases[2] is ChallengePhase.AWAITING_P2
        assert phases[5] is ChallengePhase.AWAITING_P3
        assert phases[-1] is ChallengePhase.DONE

    def test_holding_at_the_far_end_times_out(self):
        samples = yaw_stream(LEFT_TURN_YAWS[:6] + [26.0] * 120)
        verifier, statuses = run(ChallengeDirection.TURN_LEFT, samples)

        assert ChallengeStatus.PASS not in statuses
        assert verifier.session.failure_reason == "timeout"
        assert statuses[-1] is ChallengeStatus.TIMEOUT
        # Samples 0.1s apart: 10s elapse around the hundredth
        assert statuses[97] is ChallengeStatus.IN_PROGRESS
        assert statuses[101] is ChallengeStatus.TIMEOUT

    def test_wrong_direction_only_times_out(self):
        verifier, statuses = run(ChallengeDirection.TURN_LEFT, yaw_stream(LEFT_TURN_YAWS, sign=-1.0))

        assert statuses[-1] is ChallengeStatus.IN_PROGRESS
        assert verifier.session.phase is ChallengePhase.AWAITING_P2
        assert verifier.expire(now=10.0) is ChallengeStatus.TIMEOUT

    def test_uniform_speed_both_ways_fails(self):
        samples = yaw_stream([0.0, -2.0, 3.0, 10.0, 17.0, 24.0, 31.0, 24.5, 17.5, 10.5, 3.0])
        verifier, statuses = run(ChallengeDirection.TURN_LEFT, samples)

        assert statuses[-1] is ChallengeStatus.FAIL
        assert verifier.session.failure_reason == "identical_dynamics"


class TestChallengeFailures:
    """Test the out-of-band failure paths"""

    def test_face_lost_fails_immediately(self):
        verifier, statuses = run(ChallengeDirection.TURN_LEFT, [(0.0, 0.1), (2.0, 0.2), (None, 0.3)])

        assert statuses[-1] is ChallengeStatus.FAIL
        assert verifier.session.failure_reason == "face_lost"

    def test_terminal_state_is_sticky(self):
        verifier, _ = run(ChallengeDirection.TURN_LEFT, yaw_stream(LEFT_TURN_YAWS))

        assert verifier.process(30.0, 5.0) is ChallengeStatus.PASS
        assert verifier.face_lost() is ChallengeStatus.PASS

    def test_sample_before_start(self):
        with pytest.raises(SessionStateError):
            ChallengeResponseVerifier().process(0.0, 0.1)

    def test_out_of_order_sample(self):
        verifier, _ = run(ChallengeDirection.TURN_LEFT, [(0.0, 0.5)])

        with pytest.raises(SampleOrderError):
            verifier.process(1.0, 0.4)
        with pytest.raises(SampleOrderError):
            verifier.process(1.0, 0.5)

    def test_non_finite_yaw(self):
        verifier, _ = run(ChallengeDirection.TURN_LEFT, [])

        with pytest.raises(ValueError):
            verifier.process(math.nan, 0.1)

    def test_custom_timeout(self):
        verifier = ChallengeResponseVerifier(ChallengeSettings(timeout_s=2.0))
        verifier.start(ChallengeDirection.TURN_RIGHT, now=100.0)

        assert verifier.expire(now=101.9) is ChallengeStatus.IN_PROGRESS
        assert verifier.expire(now=102.0) is ChallengeStatus.TIMEOUT


class TestMovementVerification:
    """Test the three checks run once P3 is reached"""

    def test_static_legs(self):
        result = verify_movement([26.0, 26.0], [26.0, 26.0], 1.0)

        assert not result.passed
        assert result.failure_reason() == "static_movement"

    def test_wrong_way_legs(self):
        result = verify_movement([3.0, 2.0, 1.0], [26.0, 27.0, 28.0], 1.0)

        assert result.failure_reason() == "wrong_direction"

    def test_majority_of_steps_is_enough(self):
        """One noisy step backwards does not spoil an outward leg"""
        result = verify_movement([3.0, 10.0, 9.5, 20.0, 26.0], [26.0, 15.0, 4.0], 1.0)

        assert result.directional
        assert result.passed
