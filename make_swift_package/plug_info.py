"""``plugInfo.json`` handling.

OpenUSD finds plugins through ``plugInfo.json`` descriptors. Bundling moves
both the descriptors and the binaries they point at, so two fields have to be
rewritten: ``LibraryPath`` and ``ResourcePath``. Everything else in the file,
including its formatting, is left alone; the rewrite works on single-line
``"Key": "value",`` fields and never re-serializes the JSON.
"""

from dataclasses import dataclass
import pathlib
import posixpath
import re

from make_swift_package.naming import framework_name

LIBRARY_PATH_KEY: str = "LibraryPath"
RESOURCE_PATH_KEY: str = "ResourcePath"

# `*/Resources/` finds the core plugin definitions, like in vanilla OpenUSD but
# with the capital-R macOS bundle directory. `../../../../*.framework/Resources/`
# finds Hydra plugin definitions after Xcode has extracted each platform's
# framework out of its xcframework. `Resources_iOS` is the embedded equivalent.
BOOTSTRAP_PLUG_INFO: str = """{
    "Includes": [
        "*/Resources/",
        "*/Resources_iOS/",
        "../../../../*.framework/Resources/",
        "../../*.framework/Resources_iOS/"
    ]
}
"""

_FIELD_RE: re.Pattern[str] = re.compile(
    r'^(?P<prefix>\s*"(?P<key>[A-Za-z]+)"\s*:\s*)"(?P<value>[^"]*)"(?P<suffix>\s*,?\s*)$'
)


@dataclass(frozen=True, slots=True)
class PlugInfoField:
    """A single-line string field of a ``plugInfo.json`` file.

    :ivar key: JSON key.
    :ivar value: String value (without quotes).
    :ivar prefix: Text before the opening quote of the value.
    :ivar suffix: Text after the closing quote of the value.
    """

    key: str
    value: str
    prefix: str
    suffix: str

    def render(self) -> str:
        return f'{self.prefix}"{self.value}"{self.suffix}'

    def with_value(self, value: str) -> "PlugInfoField":
        return PlugInfoField(key=self.key, value=value, prefix=self.prefix, suffix=self.suffix)


def parse_field(line: str) -> PlugInfoField | None:
    """Parse a ``"Key": "value",`` line.

    :param line: One line of a JSON file.
    :returns: Field record, or ``None`` if the line isn't a single string field.
    """

    m = _FIELD_RE.match(line)
    if m is None:
        return None
    return PlugInfoField(
        key=m.group("key"),
        value=m.group("value"),
        prefix=m.group("prefix"),
        suffix=m.group("suffix"),
    )


@dataclass(frozen=True, slots=True)
class PlugInfoRewrite:
    """Rules for rewriting the descriptors of one framework.

    :ivar is_hydra_plugin: Descriptors belong to the framework holding their
        binary (Hydra render delegates). Otherwise the descriptors are core
        plugin descriptors living inside ``Usd_Plug``.
    :ivar is_macos: The framework uses the versioned macOS layout.
    """

    is_hydra_plugin: bool
    is_macos: bool

    def library_path(self, value: str) -> str:
        """Translate a ``LibraryPath`` value.

        Values are relative to the plugin root (the descriptor's parent), e.g.
        ``../hdStorm.dylib`` or ``../../libusd_usdGeom.dylib``. Values that
        don't start with ``../`` are returned unchanged.

        :param value: Original value.
        :returns: Bundle-relative value.
        """

        if value.startswith("../") is False:
            return value

        name: str = framework_name(posixpath.basename(value))
        if self.is_hydra_plugin is True:
            return name

        # Core descriptors live in Usd_Plug.framework, so walk up out of it to
        # the directory holding every framework.
        if self.is_macos is True:
            return f"../../../../../{name}.framework/{name}"
        return f"../../../{name}.framework/{name}"

    def resource_path(self, value: str) -> str:
        """Translate a ``ResourcePath`` value.

        Bundles are required to have a capital-R ``Resources`` directory and
        embedded file systems are case-sensitive, so ``resources`` always
        becomes ``Resources`` (or ``Resources_iOS`` for Hydra plugins on
        embedded platforms).

        :param value: Original value.
        :returns: Bundle-relative value.
        """

        if value != "resources":
            return value
        if self.is_hydra_plugin is True and self.is_macos is False:
            return "Resources_iOS"
        return "Resources"

    def rewrite_line(self, line: str) -> str:
        field: PlugInfoField | None = parse_field(line)
        if field is None:
            return line
        if field.key == LIBRARY_PATH_KEY:
            return field.with_value(self.library_path(field.value)).render()
        if field.key == RESOURCE_PATH_KEY:
            return field.with_value(self.resource_path(field.value)).render()
        return line

    def rewrite_text(self, text: str) -> str:
        """Rewrite ``LibraryPath`` and ``ResourcePath`` in descriptor text.

        Line count and every other byte of the text are preserved.

        :param text: Descriptor contents.
        :returns: Rewritten contents.
        """

        return "\n".join(self.rewrite_line(line) for line in text.split("\n"))


def rewrite_plug_info_files(root: pathlib.Path, *, rewrite: PlugInfoRewrite) -> list[pathlib.Path]:
    """Rewrite every ``plugInfo.json`` below ``root`` in place.

    :param root: Directory to search.
    :param rewrite: Rewrite rules.
    :returns: Rewritten files, sorted.
    """

    rewritten: list[pathlib.Path] = []
    for path in sorted(root.rglob("plugInfo.json")):
        if path.is_file() is False:
            continue
        old: str = path.read_bytes().decode("utf-8")
        new: str = rewrite.rewrite_text(old)
        if new != old:
            path.write_bytes(new.encode("utf-8"))
        rewritten.append(path)
    return rewritten
