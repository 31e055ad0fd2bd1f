"""
Formal names and their common nicknames.

Each class is one canonical given name followed by the nicknames people
use for it. Every name belongs to at most one class, so lookups are
symmetric: "bill" finds "william" and "william" finds "bill".
"""

from typing import Dict, FrozenSet, Iterable, Tuple

NICKNAME_CLASSES: Tuple[Tuple[str, ...], ...] = (
    ("abigail", "abby", "gail"),
    ("albert", "al", "bert"),
    ("alexander", "alex", "xander"),
    ("alexandra", "lexi", "sasha"),
    ("andrew", "andy", "drew"),
    ("anthony", "tony"),
    ("barbara", "barb", "babs"),
    ("benjamin", "ben", "benny", "benji"),
    ("catherine", "cathy", "kate", "katie", "cat"),
    ("charles", "charlie", "chuck", "chas"),
    ("christopher", "chris", "topher"),
    ("christina", "tina", "chrissy"),
    ("daniel", "dan", "danny"),
    ("david", "dave", "davey"),
    ("deborah", "debbie", "deb"),
    ("dorothy", "dot", "dottie"),
    ("edward", "ed", "eddie", "ted", "ned"),
    ("elizabeth", "liz", "beth", "betty", "lizzie", "eliza"),
    ("emily", "em", "emmy"),
    ("frances", "fran", "frankie"),
    ("francis", "frank"),
    ("gabriel", "gabe"),
    ("gregory", "greg"),
    ("henry", "hank", "harry"),
    ("isabella", "bella", "izzy"),
    ("jacob", "jake"),
    ("james", "jim", "jimmy", "jamie"),
    ("jennifer", "jen", "jenny"),
    ("jessica", "jess", "jessie"),
    ("john", "jack", "johnny"),
    ("jonathan", "jon", "jonny"),
    ("joseph", "joe", "joey"),
    ("joshua", "josh"),
    ("katherine", "kathy", "kat", "kay"),
    ("kenneth", "ken", "kenny"),
    ("lawrence", "larry"),
    ("leonard", "leo", "lenny"),
    ("margaret", "maggie", "meg", "peggy", "marge"),
    ("matthew", "matt", "matty"),
    ("michael", "mike", "mikey", "mick"),
    ("nathaniel", "nate", "nathan", "nat"),
    ("nicholas", "nick", "nicky"),
    ("patricia", "patty", "trish", "tricia"),
    ("patrick", "pat", "paddy"),
    ("peter", "pete"),
    ("philip", "phil"),
    ("rebecca", "becky", "becca"),
    ("richard", "rick", "ricky", "rich", "dick"),
    ("robert", "rob", "bob", "bobby", "robbie"),
    ("ronald", "ron", "ronnie"),
    ("samantha", "sammie"),
    ("samuel", "sam", "sammy"),
    ("stephen", "steve", "stevie"),
    ("susan", "sue", "susie"),
    ("theodore", "theo", "teddy"),
    ("thomas", "tom", "tommy"),
    ("timothy", "tim", "timmy"),
    ("victoria", "vicky", "tori"),
    ("william", "will", "bill", "billy", "liam", "willy"),
    ("zachary", "zach", "zack"),
)


class NicknameTable:
    """Undirected nickname lookup built from equivalence classes."""

    def __init__(self, classes: Iterable[Iterable[str]]):
        self._classes: list[FrozenSet[str]] = []
        self._class_of: Dict[str, int] = {}

        for members in classes:
            names = [m.strip().lower() for m in members if m and m.strip()]
            if not names:
                continue
            index = len(self._classes)
            for name in names:
                if name in self._class_of:
                    raise ValueError(f"Name {name!r} appears in more than one nickname class")
                self._class_of[name] = index
            self._classes.append(frozenset(names))

    def equivalents(self, name: str) -> FrozenSet[str]:
        """Other names in the same class as `name` (lowercase), excluding itself."""
        key = name.strip().lower()
        index = self._class_of.get(key)
        if index is None:
            return frozenset()
        return self._classes[index] - {key}

    def known_names(self) -> FrozenSet[str]:
        return frozenset(self._class_of)

    def __contains__(self, name: str) -> bool:
        return name.strip().lower() in self._class_of

    def __len__(self) -> int:
        return len(self._classes)


NICKNAMES = NicknameTable(NICKNAME_CLASSES)
