"""A tree-walking interpreter for Lox with classes, mixin modules and a native library."""
