import enum

class Difficulty(str, enum.Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"

DIFFICULTY_ORDER = [Difficulty.EASY, Difficulty.MEDIUM, Difficulty.HARD]

class QuestionType(str, enum.Enum):
    ALBUM_YEAR_GUESS = "album-year-guess"
    SONG_ALBUM_MATCH = "song-album-match"
    FILL_BLANK = "fill-blank"
    GUESS_BY_LYRIC = "guess-by-lyric"
    ODD_ONE_OUT = "odd-one-out"
    AI_VISUAL = "ai-visual"
    SOUND_ALIKE_SNIPPET = "sound-alike-snippet"
    MOOD_MATCH = "mood-match"
    INSPIRATION_MAP = "inspiration-map"
    LIFE_TRIVIA = "life-trivia"
    TIMELINE_ORDER = "timeline-order"
    POPULARITY_MATCH = "popularity-match"
    LONGEST_SONG = "longest-song"
    TRACKLIST_ORDER = "tracklist-order"
    OUTFIT_ERA = "outfit-era"
    LYRIC_MASHUP = "lyric-mashup"
    SPEED_TAP = "speed-tap"
    REVERSE_AUDIO = "reverse-audio"
    ONE_SECOND = "one-second"

class QuestionTheme(str, enum.Enum):
    LYRICS = "Lyrics"
    ALBUMS = "Albums"
    TIMELINE = "Timeline"
    AUDIO = "Audio"
    SONGS = "Songs"
    CAREER = "Career"
    AESTHETIC = "Aesthetic"
    OUTFITS = "Outfits"
    TOURS = "Tours"
    CHARTS = "Charts"
    POPULARITY = "Popularity"
    EVENTS = "Events"
    TRIVIA = "Trivia"
    INSPIRATION = "Inspiration"
    MOOD = "Mood"
    MASHUPS = "Mashups"
    TRACKLIST = "Tracklist"
    SPEED = "Speed"
    VISUALS = "Visuals"

class DailyQuizMode(str, enum.Enum):
    MIX = "mix"
    SPOTLIGHT = "spotlight"
    EVENT = "event"

class DailyQuizStatus(str, enum.Enum):
    PENDING_TEMPLATE = "pending_template"
    READY = "ready"
    DROPPED = "dropped"
