# Chipvm, a Chip-8 virtual machine.
# The Chipvm developers

# To the extent possible under law, the person who associated CC0 with
# Chipvm has waived all copyright and related or neighboring rights
# to Chipvm.

# You should have received a copy of the CC0 legalcode along with this
# work.  If not, see <http://creativecommons.org/publicdomain/zero/1.0/>.

"""A pygame host for the chipvm core.

Loads a program from disk, drives the machine at a fixed cycle rate,
feeds it keyboard events, paints the framebuffer whenever it changes
and holds a tone while the sound timer is running.
"""

import sys
import logging
import argparse
from array import array

import pygame

from chipvm import (Machine, Fault, AddressError, ProgramTooLarge,
                    MAX_PROGRAM, VIDEO_X, VIDEO_Y)


def positive_int(value):
    n = int(value, 0)
    if n <= 0:
        raise argparse.ArgumentTypeError(f"{value} is not a positive number")
    return n


aparser = argparse.ArgumentParser(description="A Chip-8 virtual machine")
aparser.add_argument('program',
    help="A compiled Chip-8 program to load")
aparser.add_argument('--hz',
    help="Cycles per second. Timers tick once per cycle, so 60 keeps them in real time",
    metavar="N",
    default=60,
    type=positive_int)
aparser.add_argument('--scale',
    help="Size in screen pixels of one Chip-8 pixel",
    metavar="N",
    default=10,
    type=positive_int)
aparser.add_argument('--on-fault',
    help="What to do when the program hits an illegal instruction or stack error",
    choices=['halt', 'reset', 'skip'],
    default='halt')
aparser.add_argument('--mute',
    help="Don't play the sound timer tone",
    action="store_true")
aparser.add_argument('--debug',
    help="Enable verbose debug logging, including every executed instruction",
    action="store_true")

## CONSTANTS ##

# Pixel colors for display
PIXEL_ON = (255,255,255)
PIXEL_OFF = (64,64,64)

# Tone played while the sound timer is nonzero
SOUND_FREQUENCY = 44100
TONE_HZ = 440
TONE_VOLUME = 4096

# pygame key to keypad symbol, see chipvm.KEY_MAP for the layout
KEY_MAP = {
    pygame.K_1: '1', pygame.K_2: '2', pygame.K_3: '3', pygame.K_4: '4',
    pygame.K_q: 'Q', pygame.K_w: 'W', pygame.K_e: 'E', pygame.K_r: 'R',
    pygame.K_a: 'A', pygame.K_s: 'S', pygame.K_d: 'D', pygame.K_f: 'F',
    pygame.K_z: 'Z', pygame.K_x: 'X', pygame.K_c: 'C', pygame.K_v: 'V',
}


def main(argv):
    args = aparser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)
    logging.info("Chipvm - Chip-8 virtual machine")

    try:
        program = read_program(args.program)
    except (OSError, ProgramTooLarge) as e:
        aparser.error(str(e))

    machine = Machine()
    machine.load(program)

    logging.info("Initialise display engine")
    # Mono 16 bit mixer, must be requested before pygame.init() opens it
    pygame.mixer.pre_init(SOUND_FREQUENCY, -16, 1)
    pygame.init()
    screen_x = VIDEO_X * args.scale
    screen_y = VIDEO_Y * args.scale
    pygame.display.set_caption("CHIPVM DISPLAY")
    logging.info(f"Display mode {screen_x} x {screen_y}")
    screen = pygame.display.set_mode([screen_x, screen_y])

    tone = None if args.mute else make_tone()
    playing = False
    clock = pygame.time.Clock()
    status = 0

    logging.info(f"Emulation starting at {args.hz}hz")
    running = True
    while running:
        for event in pygame.event.get():
            if not handle_event(machine, event):
                running = False
        if not running:
            break

        try:
            machine.cycle()
        except Fault as fault:
            running = handle_fault(machine, fault, args.on_fault)
            if not running:
                status = 1

        if machine.changed:
            draw_framebuffer(screen, machine, args.scale)
            pygame.display.flip()
        playing = update_tone(tone, machine.s_timer > 0, playing)
        clock.tick(args.hz)

    if tone is not None:
        tone.stop()
    pygame.quit()
    logging.info("Emulation halted.")
    return status


def run():
    sys.exit(main(sys.argv[1:]))


def read_program(path):
    """Read a program image, refusing anything that won't fit in memory"""
    with open(path, 'rb') as p:
        program = p.read()
    logging.info(f"Program length {len(program)} bytes.")
    if len(program) > MAX_PROGRAM:
        raise ProgramTooLarge(
            f"Program is too large: {len(program)} bytes, at most {MAX_PROGRAM} fit")
    return program


def handle_event(machine, event):
    """Pass key events on to the machine. Returns False when it's time to quit"""
    if event.type == pygame.QUIT:
        return False
    if event.type == pygame.KEYDOWN:
        if event.key == pygame.K_ESCAPE:
            return False
        if event.key in KEY_MAP:
            machine.update_key(KEY_MAP[event.key], True)
    elif event.type == pygame.KEYUP:
        if event.key in KEY_MAP:
            machine.update_key(KEY_MAP[event.key], False)
    return True


def handle_fault(machine, fault, policy):
    """Apply the --on-fault policy. Returns whether to keep running"""
    if isinstance(fault, AddressError) and fault.opcode is None:
        # PC ran off the end of memory, skipping only moves it further
        logging.error(f"{fault}, halting")
        return False
    if policy == 'reset':
        logging.warning(f"{fault}, resetting")
        machine.reset()
        return True
    if policy == 'skip':
        logging.warning(f"{fault}, skipping")
        machine.skip()
        return True
    logging.error(str(fault))
    return False


def draw_framebuffer(surface, machine, scale):
    """Paint the whole framebuffer onto surface"""
    surface.fill(PIXEL_OFF)
    for cell, px in enumerate(machine.framebuffer):
        if px:
            x = cell % VIDEO_X
            y = cell // VIDEO_X
            pygame.draw.rect(surface, PIXEL_ON, (x * scale, y * scale, scale, scale))


def make_tone():
    """Build a looping square wave, or None if there's no audio device"""
    try:
        if pygame.mixer.get_init() is None:
            pygame.mixer.init(SOUND_FREQUENCY, -16, 1)
    except pygame.error as e:
        logging.warning(f"No sound: {e}")
        return None
    # The mixer may already be open in another format, build one second
    # of frames for whatever rate and channel count it actually has
    frequency, size, channels = pygame.mixer.get_init()
    if size != -16:
        logging.warning(f"No sound: unsupported mixer sample size {size}")
        return None
    period = frequency // TONE_HZ
    frames = [TONE_VOLUME if i < period // 2 else -TONE_VOLUME
              for i in range(period)] * TONE_HZ
    samples = array('h', [s for s in frames for _ in range(channels)])
    return pygame.mixer.Sound(buffer=samples.tobytes())


def update_tone(tone, sounding, playing):
    """Start or stop the tone to follow the sound timer"""
    if tone is None:
        return False
    if sounding and not playing:
        tone.play(loops=-1)
    elif playing and not sounding:
        tone.stop()
    return sounding


if __name__ == "__main__":
    run()
