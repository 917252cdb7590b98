from matrix_puppet.cli import main

main()
