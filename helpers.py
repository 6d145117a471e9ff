def lsb(raw_bytes):
    return raw_bytes & 0x0F


def msb(raw_bytes):
    return raw_bytes >> 4


def nibble_at(raw_bytes, idx):
    return raw_bytes >> (4 * idx) & 0x0F


def twos_complement(number, num_bytes):
    if number >> (int(num_bytes * 8) - 1):
        return number - (1 << int(num_bytes * 8))
    else:
        return number


def units_to_int(units) -> int:
    """Join little-endian ordered 16 bit code units into one unsigned integer."""
    value = 0
    for i, unit in enumerate(units):
        value |= unit << (16 * i)
    return value


def utf16_key(string: str) -> bytes:
    # dex sorts strings by UTF-16 code units, which differs from code point order above the BMP
    return string.encode("utf-16-be", "surrogatepass")


def normalize_class_name(class_name: str) -> str:
    """
    Turn "com.example.MyClass" or "com/example/MyClass" into "Lcom/example/MyClass;".
    Descriptors that are already in type form are returned untouched.
    """
    if class_name.startswith("[") or (class_name.startswith("L") and class_name.endswith(";")):
        return class_name
    if class_name.endswith(";"):
        class_name = class_name[:-1]
    return "L%s;" % class_name.replace(".", "/")


PRIMITIVES = {
    "V": "void", "Z": "boolean", "B": "byte", "S": "short", "C": "char",
    "I": "int", "J": "long", "F": "float", "D": "double",
}


def descriptor_to_java(descriptor: str) -> str:
    dimensions = len(descriptor) - len(descriptor.lstrip("["))
    base = descriptor[dimensions:]
    if base.startswith("L") and base.endswith(";"):
        name = base[1:-1].replace("/", ".")
    else:
        name = PRIMITIVES.get(base, base)
    return name + "[]" * dimensions


def escape_string(string: str) -> str:
    return (string.replace("\\", "\\\\")
            .replace("\"", "\\\"")
            .replace("\n", "\\n")
            .replace("\r", "\\r")
            .replace("\t", "\\t"))
