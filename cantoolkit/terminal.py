"""ANSI escape sequences for terminal attributes, colours and cursor control."""

ATTRESET = "\33[0m"

ATTBOLD = "\33[1m"
ATTUNDERLINE = "\33[4m"
ATTBLINK = "\33[5m"
ATTINVERSE = "\33[7m"
ATTINVISIBLE = "\33[8m"

FGBLACK = "\33[30m"
FGRED = "\33[31m"
FGGREEN = "\33[32m"
FGYELLOW = "\33[33m"
FGBLUE = "\33[34m"
FGMAGENTA = "\33[35m"
FGCYAN = "\33[36m"
FGWHITE = "\33[37m"

BGBLACK = "\33[40m"
BGRED = "\33[41m"
BGGREEN = "\33[42m"
BGYELLOW = "\33[43m"
BGBLUE = "\33[44m"
BGMAGENTA = "\33[45m"
BGCYAN = "\33[46m"
BGWHITE = "\33[47m"

CSR_HOME = "\33[H"
CSR_UP = "\33[A"
CSR_DOWN = "\33[B"
CSR_RIGHT = "\33[C"
CSR_LEFT = "\33[D"

CSR_HIDE = "\33[?25l"
CSR_SHOW = "\33[?25h"

CLR_SCREEN = "\33[2J"