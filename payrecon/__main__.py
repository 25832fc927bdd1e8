from payrecon.cli import main

main()
