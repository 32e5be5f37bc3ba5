"""All magic numbers and configuration defaults."""

VOICE_TARGET_LUFS = -16.0           # integrated loudness target for voice sections
MUSIC_TARGET_LUFS = -20.0           # integrated loudness target for music beds
MAX_TRUE_PEAK_DB = -1.0             # true-peak ceiling after normalization
LOUDNESS_TOLERANCE_LU = 0.5         # accepted deviation from target after normalization
LOUDNORM_LRA = 11.0                 # loudness range passed to the loudnorm analysis pass
DUCK_VOLUME = 0.15                  # bed volume factor under voice
BED_FADE_SECONDS = 1.0              # bed fade at entry/exit of a ducked section
CROSSFADE_SECONDS = 1.0             # music solo <-> voice crossfade
LEAD_IN_SECONDS = 4.0               # intro bed solo before the intro section
TAIL_SECONDS = 4.0                  # outro bed solo after the last section
TRANSITION_SILENCE_SECONDS = 0.75   # silence used when no transition asset exists
WORK_SAMPLE_RATE = 44100            # working PCM sample rate
WORK_CHANNELS = 2                   # working PCM channel count
WORK_CODEC = "pcm_s16le"            # working PCM codec (scratch files are WAV)
PROCESS_TIMEOUT_SECONDS = 300.0     # per-invocation toolchain timeout
TIMEOUT_RETRIES = 0                 # retries after a timeout (0 = caller decides)
RETRY_BASE_DELAY = 1.0              # seconds, base delay for exponential backoff
MAX_WORKERS = 4                     # bounded pool for per-element normalization
OUTPUT_FORMAT = "mp3"               # deliverable container/format
OUTPUT_BITRATE = "128k"             # deliverable bitrate
SCRATCH_PREFIX = "podcast-assembler-"
MANIFEST_NAME = "output.json"
VERSION = "0.1.0"
