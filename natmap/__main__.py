from natmap.cli import main

main()
