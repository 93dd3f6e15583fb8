# Interviewer phrases that mark the natural end of an interview, per spoken language.
# Patterns are regular expressions matched case-insensitively anywhere in a turn.
# Bump the version whenever a phrase set changes.

CONCLUSION_PHRASES_VERSION = 3

CONCLUSION_PHRASES: dict[str, list[str]] = {
    "en": [
        r"thank you (so much |very much )?for your time",
        r"thanks (so much )?for your time",
        r"that concludes (our|the|this) interview",
        r"this concludes",
        r"end of (the|our) interview",
        r"we have all the information we need",
        r"thank you for coming in",
        r"we('ll| will) be in touch",
        r"that('s| is) all (the questions )?i have",
        r"best of luck",
        r"good luck (with|in) (your|the)",
        r"\bgoodbye\b",
        r"have a (great|nice|good) (day|evening|one)",
    ],
    "bg": [
        r"благодаря (ви )?за отделеното време",
        r"благодаря ви за времето",
        r"това приключва (нашето |интервюто)",
        r"интервюто приключи",
        r"с това (нашето )?интервю приключва",
        r"имаме цялата информация",
        r"ще се свържем с вас",
        r"пожелавам ви (много )?успех",
        r"успех (в|във|с) ",
        r"довиждане",
        r"приятен ден",
    ],
}

DEFAULT_LANGUAGE = "en"

GREETINGS: dict[str, str] = {
    "en": "Hello!",
    "bg": "Здравейте!",
}
