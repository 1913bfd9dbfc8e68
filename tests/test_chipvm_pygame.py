"""
Tests for the pygame host. Runs headless (see conftest.py): no window is
opened and the mixer only ever talks to the dummy audio driver.
"""

import pygame
import pytest

import chipvm
import chipvm_pygame
from chipvm import (LOAD_POS, MAX_PROGRAM, AddressError, IllegalInstruction,
                    ProgramTooLarge)
from chipvm_pygame import (KEY_MAP, PIXEL_OFF, PIXEL_ON, SOUND_FREQUENCY,
                           aparser, draw_framebuffer, handle_event,
                           handle_fault, make_tone, read_program, update_tone)


class FakeTone:
    def __init__(self):
        self.calls = []

    def play(self, loops=0):
        self.calls.append(('play', loops))

    def stop(self):
        self.calls.append(('stop',))


def key_event(kind, key):
    return pygame.event.Event(kind, key=key)


# =============================================================================
#  ARGUMENTS
# =============================================================================

class TestArguments:

    def test_defaults(self):
        args = aparser.parse_args(['pong.ch8'])
        assert args.program == 'pong.ch8'
        assert args.hz == 60
        assert args.scale == 10
        assert args.on_fault == 'halt'
        assert args.mute is False
        assert args.debug is False

    def test_options(self):
        args = aparser.parse_args(['pong.ch8', '--hz', '500', '--scale', '4',
                                   '--on-fault', 'skip', '--mute', '--debug'])
        assert args.hz == 500
        assert args.scale == 4
        assert args.on_fault == 'skip'
        assert args.mute is True
        assert args.debug is True

    @pytest.mark.parametrize("argv", [
        ['pong.ch8', '--hz', '0'],
        ['pong.ch8', '--scale', '-1'],
        ['pong.ch8', '--on-fault', 'ignore'],
    ])
    def test_rejects_bad_values(self, argv):
        with pytest.raises(SystemExit):
            aparser.parse_args(argv)

    def test_missing_program_file(self, tmp_path):
        with pytest.raises(SystemExit):
            chipvm_pygame.main([str(tmp_path / 'nope.ch8')])


# =============================================================================
#  PROGRAM FILES
# =============================================================================

class TestReadProgram:

    def test_reads_bytes(self, tmp_path):
        path = tmp_path / 'prog.ch8'
        path.write_bytes(bytes([0x00, 0xE0, 0x12, 0x02]))
        assert read_program(str(path)) == bytes([0x00, 0xE0, 0x12, 0x02])

    def test_largest_program(self, tmp_path):
        path = tmp_path / 'big.ch8'
        path.write_bytes(bytes(MAX_PROGRAM))
        assert len(read_program(str(path))) == MAX_PROGRAM

    def test_too_large(self, tmp_path):
        path = tmp_path / 'huge.ch8'
        path.write_bytes(bytes(MAX_PROGRAM + 1))
        with pytest.raises(ProgramTooLarge):
            read_program(str(path))


# =============================================================================
#  INPUT
# =============================================================================

class TestEvents:

    def test_key_map_covers_keypad(self):
        assert sorted(KEY_MAP.values()) == sorted(chipvm.KEY_MAP)

    def test_key_down_and_up(self, machine):
        assert handle_event(machine, key_event(pygame.KEYDOWN, pygame.K_w))
        assert machine.keys[5] is True
        assert handle_event(machine, key_event(pygame.KEYUP, pygame.K_w))
        assert machine.keys[5] is False

    def test_x_is_key_zero(self, machine):
        handle_event(machine, key_event(pygame.KEYDOWN, pygame.K_x))
        assert machine.keys[0] is True

    def test_unmapped_key(self, machine):
        assert handle_event(machine, key_event(pygame.KEYDOWN, pygame.K_p))
        assert machine.keys == [False] * 16

    def test_escape_quits(self, machine):
        assert not handle_event(machine, key_event(pygame.KEYDOWN, pygame.K_ESCAPE))

    def test_window_close_quits(self, machine):
        assert not handle_event(machine, pygame.event.Event(pygame.QUIT))


# =============================================================================
#  FAULT POLICY
# =============================================================================

class TestFaultPolicy:

    def fault(self, boot):
        machine = boot(0x6A01, 0x0123, 0x6B02)
        machine.cycle()
        with pytest.raises(IllegalInstruction) as e:
            machine.cycle()
        return machine, e.value

    def test_halt(self, boot):
        machine, fault = self.fault(boot)
        assert handle_fault(machine, fault, 'halt') is False
        assert machine.reg_PC == LOAD_POS + 2

    def test_reset(self, boot):
        machine, fault = self.fault(boot)
        assert handle_fault(machine, fault, 'reset') is True
        assert machine.reg_PC == LOAD_POS
        assert machine.reg_V[0xA] == 0

    def test_skip(self, boot):
        machine, fault = self.fault(boot)
        assert handle_fault(machine, fault, 'skip') is True
        machine.cycle()
        assert machine.reg_V[0xA] == 1
        assert machine.reg_V[0xB] == 2

    @pytest.mark.parametrize("policy", ['halt', 'reset', 'skip'])
    def test_fetch_past_end_always_halts(self, boot, policy):
        # JP 0xFFF
        machine = boot(0x1FFF)
        machine.cycle()
        with pytest.raises(AddressError) as e:
            machine.cycle()
        assert handle_fault(machine, e.value, policy) is False
        assert machine.reg_PC == 0xFFF

    def test_data_address_error_follows_policy(self, boot):
        # LD I, 0xFFE / LD B, V0 / LD VA, 1
        machine = boot(0xAFFE, 0xF033, 0x6A01)
        machine.cycle()
        with pytest.raises(AddressError) as e:
            machine.cycle()
        assert handle_fault(machine, e.value, 'skip') is True
        machine.cycle()
        assert machine.reg_V[0xA] == 1


# =============================================================================
#  OUTPUT
# =============================================================================

class TestOutput:

    def test_draw_framebuffer(self, boot):
        # LD V0, 1 / LD V1, 2 / LD I, 0x300 / DRW V0, V1, 1
        machine = boot(0x6001, 0x6102, 0xA300, 0xD011, data={0x300: [0x80]})
        for _ in range(4):
            machine.cycle()
        surface = pygame.Surface((64 * 2, 32 * 2))
        draw_framebuffer(surface, machine, 2)
        assert tuple(surface.get_at((2, 4)))[:3] == PIXEL_ON
        assert tuple(surface.get_at((3, 5)))[:3] == PIXEL_ON
        assert tuple(surface.get_at((0, 0)))[:3] == PIXEL_OFF
        assert tuple(surface.get_at((4, 4)))[:3] == PIXEL_OFF

    def test_tone_follows_sound_timer(self):
        tone = FakeTone()
        playing = update_tone(tone, True, False)
        assert playing is True
        playing = update_tone(tone, True, playing)
        playing = update_tone(tone, False, playing)
        assert playing is False
        assert tone.calls == [('play', -1), ('stop',)]

    def test_no_tone(self):
        assert update_tone(None, True, False) is False


class TestTone:

    @pytest.fixture
    def mixer(self):
        """Open the mixer in the given format, skip if there's no audio at all"""
        def _open(channels):
            pygame.mixer.quit()
            try:
                pygame.mixer.init(SOUND_FREQUENCY, -16, channels)
            except pygame.error as e:
                pytest.skip(f"no audio driver: {e}")
        yield _open
        pygame.mixer.quit()

    @pytest.mark.parametrize("channels", [1, 2])
    def test_one_second_in_any_channel_layout(self, mixer, channels):
        mixer(channels)
        tone = make_tone()
        assert tone is not None
        assert tone.get_length() == pytest.approx(1.0, abs=0.01)

    def test_opens_mixer_when_closed(self):
        pygame.mixer.quit()
        try:
            tone = make_tone()
            if tone is None:
                pytest.skip("no audio driver")
            assert tone.get_length() == pytest.approx(1.0, abs=0.01)
        finally:
            pygame.mixer.quit()
